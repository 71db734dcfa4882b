from __future__ import annotations

"""Bearer-token helpers for the gateway.

Accounts (registration, login, password reset) are handled by the external
auth service that issues these tokens; the gateway only verifies them and
reads the ``{id, email, nick}`` claims to attribute poster history.

Env vars:
- JWT_SECRET (required in prod; default for dev)
- JWT_EXPIRES_MIN (default 1440, one day)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import os
import logging
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel


logger = logging.getLogger("advisor.auth")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 24 * 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = os.getenv("JWT_SECRET") or "dev-secret-change-me"
        expires = int(os.getenv("JWT_EXPIRES_MIN", str(24 * 60)))
        return JwtConfig(secret=secret, expires_min=expires)


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None
    nick: Optional[str] = None


def create_access_token(user: AuthUser, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "id": user.id,
        "email": user.email,
        "nick": user.nick,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> AuthUser:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
    user_id = data.get("id")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
    return AuthUser(id=str(user_id), email=data.get("email"), nick=data.get("nick"))


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> AuthUser:
    """Require a valid bearer token: 401 when absent, 403 when it does not verify."""
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer" or not creds.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return decode_token(creds.credentials)


def get_optional_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Optional[AuthUser]:
    """Anonymous callers are allowed; a bad token is treated as anonymous."""
    if creds is None or not creds.credentials:
        return None
    try:
        return decode_token(creds.credentials)
    except HTTPException as exc:
        logger.warning("optional_token_rejected", extra={"detail": exc.detail})
        return None
