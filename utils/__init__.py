"""Shared utilities: money arithmetic, error taxonomy, thread offloading"""
