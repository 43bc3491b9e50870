"""
api/deps.py — Shared Route Dependencies
=========================================
Identity/Role provider: turns the caller's bearer JWT into a Caller.
This service does not authenticate people itself; it trusts a token signed
with JWT_SECRET_KEY whose `sub` is the caller id and `role` is their role.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from core.crypto import JWTError, crypto_engine
from core.schemas import Caller


async def get_caller(authorization: Optional[str] = Header(default=None)) -> Caller:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = crypto_engine.verify_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not claims.get("sub") or not claims.get("role"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token lacks sub/role claims.")
    return Caller(id=str(claims["sub"]), role=str(claims["role"]).strip().lower())


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
