"""
Request authentication.

- Chat-bot (public) routes: tenant resolved from the path by id or slug and
  checked against the X-API-Key header.
- Admin routes: bearer JWT carrying sub, name, role and tenant_id.
"""

import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pymongo.database import Database

from database import get_db, store_errors, to_object_id
from errors import AuthenticationError, AuthorizationError, TenantNotFoundError

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret_change_me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", 60 * 24 * 14))  # 14 days
STAFF_ROLES = ('admin', 'staff', 'super-admin')


def create_jwt(payload: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=TOKEN_EXPIRE_MIN)
    to_encode = {"exp": exp, "iat": now, **payload}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict[str, Any]:
    if not creds:
        raise AuthenticationError("Authorization required")
    return decode_jwt(creds.credentials)


def require_staff(request: Request, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get('role') not in STAFF_ROLES:
        raise AuthorizationError("Only restaurant staff can manage orders")
    if not user.get('tenant_id'):
        raise AuthorizationError("Token is not bound to a tenant")
    request.state.tenant_id = user["tenant_id"]
    return user


@store_errors
def find_tenant(database: Database, ref: str) -> Optional[Dict[str, Any]]:
    """Active tenant by id or slug."""
    oid = to_object_id(ref)
    clauses = [{"slug": ref}]
    if oid is not None:
        clauses.insert(0, {"_id": oid})
    return database["tenant"].find_one({"$or": clauses, "active": True})


def resolve_tenant(request: Request, tenant_id: str, x_api_key: Optional[str] = Header(None),
                   database: Database = Depends(get_db)) -> Dict[str, Any]:
    if not x_api_key:
        raise AuthenticationError("API key required")
    tenant = find_tenant(database, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    if not hmac.compare_digest(str(tenant.get("api_key", "")), x_api_key):
        raise AuthenticationError("Invalid API key")
    request.state.tenant_id = str(tenant["_id"])
    return tenant
