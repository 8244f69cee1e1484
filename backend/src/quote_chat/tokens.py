from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import ChatGrant

from .config import Settings
from .errors import ValidationError


@dataclass(frozen=True)
class IssuedToken:
    token: str
    identity: str
    expires_at: datetime
    ttl_seconds: int


class TokenIssuer:
    """Issues provider access tokens scoped to the conversations service."""

    def __init__(
        self,
        *,
        account_sid: str,
        api_key: str,
        api_secret: str,
        service_sid: str,
        default_ttl_seconds: int = 2700,
        max_ttl_seconds: int = 86400,
    ) -> None:
        self._account_sid = account_sid
        self._api_key = api_key
        self._api_secret = api_secret
        self._service_sid = service_sid
        self._default_ttl_seconds = default_ttl_seconds
        self._max_ttl_seconds = max_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            account_sid=settings.twilio_account_sid,
            api_key=settings.twilio_api_key,
            api_secret=settings.twilio_api_secret,
            service_sid=settings.twilio_conversations_service_sid,
            default_ttl_seconds=settings.chat_token_default_ttl_seconds,
            max_ttl_seconds=settings.chat_token_max_ttl_seconds,
        )

    def issue(self, identity: str, *, ttl_seconds: int | None = None, now: datetime | None = None) -> IssuedToken:
        if not identity:
            raise ValidationError("identity is required")
        ttl = self._default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("ttlSeconds must be positive")
        if ttl > self._max_ttl_seconds:
            raise ValidationError(f"ttlSeconds must not exceed {self._max_ttl_seconds}")

        issued_at = now or datetime.now(timezone.utc)
        token = AccessToken(
            self._account_sid,
            self._api_key,
            self._api_secret,
            identity=identity,
            ttl=ttl,
        )
        token.add_grant(ChatGrant(service_sid=self._service_sid))
        jwt = token.to_jwt()
        if isinstance(jwt, bytes):
            jwt = jwt.decode("utf-8")
        return IssuedToken(
            token=jwt,
            identity=identity,
            expires_at=issued_at + timedelta(seconds=ttl),
            ttl_seconds=ttl,
        )
