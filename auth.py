from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import get_settings
from database import get_db, oid
from errors import AuthenticationFailed, Forbidden, NotFound
from schemas import Role, SalesmanPermissions

log = structlog.get_logger()

PASSWORD_SETUP = "password_setup"

bearer_scheme = HTTPBearer(auto_error=False)


# -----------------------------
# Passwords & tokens
# -----------------------------

@lru_cache
def get_pwd_context() -> CryptContext:
    return CryptContext(
        schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=get_settings().bcrypt_rounds
    )


def hash_password(password: str) -> str:
    return get_pwd_context().hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return get_pwd_context().verify(plain_password, hashed_password)


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None,
                        purpose: Optional[str] = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.access_token_expire_days))
    to_encode: Dict[str, Any] = {"sub": str(user_id), "role": role, "exp": expire}
    if purpose:
        to_encode["purpose"] = purpose
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_password_setup_token(user_id: str, role: str) -> str:
    minutes = get_settings().password_setup_expire_minutes
    return create_access_token(user_id, role, timedelta(minutes=minutes), purpose=PASSWORD_SETUP)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthenticationFailed("Invalid or expired token")
    if not payload.get("sub") or payload.get("role") not in {r.value for r in Role}:
        raise AuthenticationFailed("Invalid authentication")
    return payload


# -----------------------------
# Actors
# -----------------------------

@dataclass(frozen=True)
class WholesalerActor:
    id: str
    business_name: str = ""
    role = Role.WHOLESALER

    @property
    def wholesaler_id(self) -> str:
        return self.id

    def can(self, permission: str) -> bool:
        return True


@dataclass(frozen=True)
class RetailerActor:
    id: str
    business_name: str = ""
    business_address: str = ""
    role = Role.RETAILER

    def can(self, permission: str) -> bool:
        return False


@dataclass(frozen=True)
class SalesmanActor:
    id: str
    wholesaler_id: str
    name: str = ""
    permissions: SalesmanPermissions = field(default_factory=SalesmanPermissions)
    role = Role.SALESMAN

    def can(self, permission: str) -> bool:
        return bool(getattr(self.permissions, permission))


Actor = Union[WholesalerActor, RetailerActor, SalesmanActor]


def load_actor(db: Database, user_id: str, role: str) -> Actor:
    _id = oid(user_id)
    if role == Role.WHOLESALER:
        doc = db["wholesaler"].find_one({"_id": _id}) if _id else None
        if not doc:
            raise NotFound("Wholesaler not found")
        return WholesalerActor(id=str(doc["_id"]), business_name=doc.get("business_name", ""))
    if role == Role.RETAILER:
        doc = db["retailer"].find_one({"_id": _id}) if _id else None
        if not doc:
            raise NotFound("Retailer not found")
        return RetailerActor(
            id=str(doc["_id"]),
            business_name=doc.get("business_name", ""),
            business_address=doc.get("business_address", ""),
        )
    doc = db["salesman"].find_one({"_id": _id}) if _id else None
    if not doc or not doc.get("is_active", True):
        raise NotFound("Salesman not found or inactive")
    return SalesmanActor(
        id=str(doc["_id"]),
        wholesaler_id=doc["wholesaler_id"],
        name=doc.get("name", ""),
        permissions=SalesmanPermissions(**(doc.get("permissions") or {})),
    )


def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> Actor:
    if credentials is None:
        raise AuthenticationFailed("Access denied. No token provided.")
    payload = decode_token(credentials.credentials)
    if payload.get("purpose") == PASSWORD_SETUP:
        raise AuthenticationFailed("Password setup token cannot be used here")
    actor = load_actor(db, payload["sub"], payload["role"])
    structlog.contextvars.bind_contextvars(actor_id=actor.id, actor_role=actor.role.value)
    return actor


# -----------------------------
# Role & permission dependencies
# -----------------------------

def require_wholesaler(actor: Actor = Depends(get_actor)) -> WholesalerActor:
    if not isinstance(actor, WholesalerActor):
        raise Forbidden("Access denied. Wholesaler access required.")
    return actor


def require_retailer(actor: Actor = Depends(get_actor)) -> RetailerActor:
    if not isinstance(actor, RetailerActor):
        raise Forbidden("Access denied. Retailer access required.")
    return actor


def require_salesman(actor: Actor = Depends(get_actor)) -> SalesmanActor:
    if not isinstance(actor, SalesmanActor):
        raise Forbidden("Access denied. Salesman access required.")
    return actor


def require_seller(actor: Actor = Depends(get_actor)) -> Union[WholesalerActor, SalesmanActor]:
    if isinstance(actor, RetailerActor):
        raise Forbidden("Access denied. Wholesaler or Salesman access required.")
    return actor


def ensure_permission(actor: Actor, permission: str) -> None:
    if not actor.can(permission):
        raise Forbidden(f"You do not have permission to perform this action ({permission})")


def require_permission(permission: str):
    """Dependency factory: wholesaler, or salesman holding ``permission``."""

    def dependency(actor: Actor = Depends(require_seller)) -> Union[WholesalerActor, SalesmanActor]:
        ensure_permission(actor, permission)
        return actor

    return dependency
