"""
Bearer token authentication for the settlement API

Tokens are HS256 JWTs carrying the user id in ``sub`` and the marketplace role
in ``role``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, Request

from config import Config
from models import UserRole
from services.caller import Caller
from services.registry import SettlementServices
from utils.exception_handler import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

VALID_ROLES = {role.value for role in UserRole}


def decode_bearer_token(token: str) -> Caller:
    try:
        claims = jwt.decode(token, Config.JWT_SECRET, algorithms=[Config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"🚨 AUTH_INVALID_TOKEN: {e}")
        raise AuthenticationError("Invalid token")

    user_id = claims.get("sub")
    role = claims.get("role")
    if not user_id or role not in VALID_ROLES:
        raise AuthenticationError("Token is missing subject or role")
    return Caller(id=str(user_id), role=role)


def issue_token(user_id: str, role: str, expires_in: int = 3600) -> str:
    """Sign a bearer token (used by operators and tests)"""
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "role": role, "iat": now, "exp": now + timedelta(seconds=expires_in)}
    return jwt.encode(payload, Config.JWT_SECRET, algorithm=Config.JWT_ALGORITHM)


async def get_current_caller(authorization: Optional[str] = Header(None)) -> Caller:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    return decode_bearer_token(authorization.split(" ", 1)[1].strip())


async def require_brand(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_brand:
        raise AuthorizationError("Brand account required")
    return caller


async def require_creator(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_creator:
        raise AuthorizationError("Creator account required")
    return caller


async def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError("Admin access required")
    return caller


def get_services(request: Request) -> SettlementServices:
    return request.app.state.services
