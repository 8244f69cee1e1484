from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_TOKEN_VERSION = "v1"


class SessionTokenError(ValueError):
    """Raised when a bearer session token is invalid or expired."""


@dataclass(frozen=True)
class SessionTokenPayload:
    user_id: str
    expires_at: datetime

    def claims(self) -> dict[str, object]:
        return {"sub": self.user_id, "exp": int(self.expires_at.timestamp())}


def _urlsafe(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _from_urlsafe(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _signature(secret: str, signed_part: str) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")
    digest = hmac.new(secret.encode("utf-8"), signed_part.encode("ascii"), hashlib.sha256).digest()
    return _urlsafe(digest)


def create_session_token(*, user_id: str, ttl_minutes: int, now: datetime | None = None) -> SessionTokenPayload:
    if not user_id:
        raise SessionTokenError("session user id is empty")
    return SessionTokenPayload(
        user_id=user_id,
        expires_at=(now or datetime.now(timezone.utc)) + timedelta(minutes=ttl_minutes),
    )


def encode_session_token(payload: SessionTokenPayload, *, secret: str) -> str:
    body = _urlsafe(json.dumps(payload.claims(), separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signed_part = f"{_TOKEN_VERSION}.{body}"
    return f"{signed_part}.{_signature(secret, signed_part)}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> SessionTokenPayload:
    parts = (token or "").split(".")
    if len(parts) != 3 or parts[0] != _TOKEN_VERSION:
        raise SessionTokenError("invalid token format")

    version, body, provided = parts
    if not hmac.compare_digest(provided, _signature(secret, f"{version}.{body}")):
        raise SessionTokenError("token signature mismatch")

    try:
        claims = json.loads(_from_urlsafe(body))
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        user_id = str(claims.get("sub") or "").strip()
    except (ValueError, KeyError, TypeError) as exc:
        raise SessionTokenError("token payload decoding failed") from exc

    if not user_id:
        raise SessionTokenError("token subject missing")
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise SessionTokenError("token expired")
    return SessionTokenPayload(user_id=user_id, expires_at=expires_at)
