"""Resolve the calling account from a session token."""
from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Header, HTTPException, status
from jose import JWTError, jwt

from . import app_context

SESSION_COOKIE_NAME = "session"


def account_id_from_token(token: str, *, secret: str, algorithm: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None or str(subject).strip() == "":
        return None
    return str(subject)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_account_id(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> str:
    token = _bearer_token(authorization) or session_token
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    config = app_context.get_config()
    if not config.session_token_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Authentication is not configured")

    account_id = account_id_from_token(
        token,
        secret=config.session_token_secret,
        algorithm=config.session_token_algorithm,
    )
    if account_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return account_id
