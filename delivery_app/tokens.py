from __future__ import annotations

import secrets
import threading
import time
from typing import Dict, Tuple, TypedDict

import jwt
from flask import current_app


class TokenPayload(TypedDict):
    uid: str
    userId: int


class RefreshTokenError(Exception):
    """Raised when a refresh token is unknown or expired."""


def sign_access_token(payload: TokenPayload) -> str:
    now = int(time.time())
    claims = {
        "uid": payload["uid"],
        "userId": payload["userId"],
        "iat": now,
        "exp": now + int(current_app.config["JWT_EXPIRES_IN"]),
    }
    return jwt.encode(claims, current_app.config["JWT_SECRET"], algorithm="HS256")


def verify_access_token(token: str) -> TokenPayload:
    """Decode an access token; raises ``jwt.InvalidTokenError`` when it is not valid."""
    data = jwt.decode(token, current_app.config["JWT_SECRET"], algorithms=["HS256"])
    if not data.get("uid"):
        raise jwt.InvalidTokenError("missing uid")
    return {"uid": str(data["uid"]), "userId": data.get("userId")}


class RefreshTokenStore:
    """Process-local, single-use refresh tokens."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, Tuple[TokenPayload, int]] = {}

    def mint(self, payload: TokenPayload, ttl: int) -> str:
        token = secrets.token_hex(48)
        expires_at = int(time.time()) + ttl
        with self._lock:
            self._tokens[token] = ({"uid": payload["uid"], "userId": payload["userId"]}, expires_at)
        return token

    def rotate(self, old_token: str, ttl: int) -> Tuple[str, TokenPayload]:
        with self._lock:
            record = self._tokens.pop(old_token, None)
        if record is None:
            raise RefreshTokenError("invalid_refresh_token")
        payload, expires_at = record
        if expires_at < int(time.time()):
            raise RefreshTokenError("expired_refresh_token")
        return self.mint(payload, ttl), payload

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


refresh_tokens = RefreshTokenStore()


def mint_refresh_token(payload: TokenPayload) -> str:
    return refresh_tokens.mint(payload, int(current_app.config["REFRESH_TOKEN_EXPIRES_IN"]))


def rotate_refresh_token(old_token: str) -> Tuple[str, TokenPayload]:
    return refresh_tokens.rotate(old_token, int(current_app.config["REFRESH_TOKEN_EXPIRES_IN"]))
