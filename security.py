import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from pymongo.database import Database

from config import (
    BCRYPT_ROUNDS,
    JWT_SECRET,
    JWT_REFRESH_SECRET,
    JWT_EXPIRES_MIN,
    JWT_REFRESH_EXPIRES_DAYS,
)
from database import get_db
from errors import AuthenticationError, PermissionDeniedError
from schemas import Role

log = logging.getLogger("shop.security")

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


# Passwords and one-off tokens

def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def random_token() -> str:
    return secrets.token_hex(20)


# JWT

def create_token(user: dict) -> str:
    now = datetime.utcnow()
    payload = {
        "sub": str(user["_id"]),
        "type": "access",
        "role": user.get("role", Role.customer.value),
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def create_refresh_token(user: dict) -> str:
    now = datetime.utcnow()
    payload = {
        "sub": str(user["_id"]),
        "type": "refresh",
        "exp": now + timedelta(days=JWT_REFRESH_EXPIRES_DAYS),
        "iat": now,
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, JWT_REFRESH_SECRET, algorithm="HS256")


def decode_token(token: str, refresh: bool = False) -> dict:
    secret = JWT_REFRESH_SECRET if refresh else JWT_SECRET
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    if payload.get("type") != ("refresh" if refresh else "access"):
        raise AuthenticationError("Invalid token")
    return payload


def token_pair(user: dict) -> dict:
    return {"token": create_token(user), "refresh_token": create_refresh_token(user)}


# Roles and capabilities

class Capability(str, Enum):
    shop = "shop"
    manage_catalog = "manage_catalog"
    manage_promotions = "manage_promotions"
    manage_orders = "manage_orders"
    manage_payments = "manage_payments"
    manage_users = "manage_users"
    view_statistics = "view_statistics"
    deliver_orders = "deliver_orders"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.customer: frozenset({Capability.shop}),
    Role.courier: frozenset({Capability.deliver_orders}),
    Role.admin: frozenset({
        Capability.shop,
        Capability.manage_catalog,
        Capability.manage_promotions,
        Capability.manage_orders,
        Capability.manage_payments,
        Capability.manage_users,
        Capability.view_statistics,
    }),
}


def can(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller, passed explicitly to handlers."""
    user: dict
    user_id: str
    role: Role

    def can(self, capability: Capability) -> bool:
        return can(self.role, capability)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role"),
        "is_active": user.get("is_active", True),
        "is_verified": user.get("is_verified", False),
        "created_at": user.get("created_at"),
    }


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           db: Database = Depends(get_db)) -> RequestContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Not authorized, no token")
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise AuthenticationError("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise AuthenticationError("User not found")
    if not user.get("is_active", True):
        raise PermissionDeniedError("This account has been disabled")
    try:
        role = Role(user.get("role", Role.customer.value))
    except ValueError:
        raise PermissionDeniedError("Unknown role")
    return RequestContext(user=user, user_id=str(user["_id"]), role=role)


def require(capability: Capability):
    """Dependency factory: authenticated caller holding ``capability``."""

    async def checker(ctx: RequestContext = Depends(get_current_user)) -> RequestContext:
        if not ctx.can(capability):
            log.warning("User %s (%s) denied %s", ctx.user_id, ctx.role.value, capability.value)
            raise PermissionDeniedError("Access denied")
        return ctx

    return checker
