from typing import Dict
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from app.auth.schemas import CurrentUser
from app.auth.security import decode_access_token

# Tokens are issued by the identity service; tokenUrl is documentation only.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")

CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Acting user and tenant from the access token claims; no database lookup."""
    try:
        claims = decode_access_token(token)
        user_id = UUID(str(claims.get("user_id") or claims.get("sub")))
        tenant_id = UUID(str(claims.get("tenant_id")))
    except (JWTError, ValueError):
        raise CREDENTIALS_EXCEPTION

    role = claims.get("role")
    if not role:
        raise CREDENTIALS_EXCEPTION
    permissions: Dict[str, Dict[str, bool]] = claims.get("permissions") or {}

    return CurrentUser(id=user_id, tenant_id=tenant_id, role=role, permissions=permissions)
