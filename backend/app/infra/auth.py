from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

ROLE_ADMIN = "admin"
ROLE_CLIENT = "client"
TOKEN_ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    pass


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. Clients are identified by ``subject`` (their
    client id); admins by their operator name."""

    subject: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def owns(self, client_id: str | None) -> bool:
        return self.role == ROLE_CLIENT and client_id is not None and self.subject == client_id


def create_client_token(
    client_id: str,
    ttl_minutes: int,
    secret: str,
    *,
    token_id: uuid.UUID | None = None,
) -> str:
    issued_at = datetime.now(tz=timezone.utc)
    payload: Dict[str, Any] = {
        "sub": client_id,
        "role": ROLE_CLIENT,
        "exp": issued_at + timedelta(minutes=ttl_minutes),
        "iat": issued_at,
        "jti": str(token_id or uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], options={"require": ["sub", "exp"]})


def principal_from_token(token: str, secret: str) -> Principal:
    try:
        claims = decode_access_token(token, secret)
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError(type(exc).__name__) from exc
    if claims.get("role") != ROLE_CLIENT:
        raise InvalidTokenError("unsupported_role")
    return Principal(subject=str(claims["sub"]), role=ROLE_CLIENT)
