"""FastAPI routers for the settlement API"""
