"""
verify.py
---------
Purpose:
    Resolve a bearer token to a stable user identifier.

Notes:
    - Tokens are issued by the auth service and signed with JWT_SECRET.
    - The user id is taken from `sub`, falling back to `id` / `_id`.
    - Provides `auth_dependency` (claims) and `current_user_id` for routes.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings

_security = HTTPBearer()

USER_ID_CLAIMS = ("sub", "id", "_id")


def verify_jwt(token: str) -> dict:
    if not settings.JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    try:
        options = {"verify_exp": True, "verify_aud": bool(settings.JWT_AUDIENCE)}
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def user_id_from_claims(claims: dict) -> str | None:
    for claim in USER_ID_CLAIMS:
        value = claims.get(claim)
        if value:
            return str(value)
    return None


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def current_user_id(claims: dict = Depends(auth_dependency)) -> str:
    user_id = user_id_from_claims(claims)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id
