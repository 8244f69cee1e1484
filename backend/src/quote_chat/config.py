from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _first_env(*keys: str) -> str:
    for key in keys:
        value = os.getenv(key, "").strip()
        if value:
            return value
    return ""


def _is_placeholder(value: str) -> bool:
    normalized = value.strip().lower()
    if not normalized:
        return True
    return normalized.startswith("dev-") or normalized in {"change-me", "changeme", "replace-me", "placeholder"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Quote Chat"
    api_prefix: str = "/api/v1"
    # Provider credentials; all four are required at startup.
    twilio_account_sid: str = ""
    twilio_api_key: str = ""
    twilio_api_secret: str = ""
    twilio_conversations_service_sid: str = ""
    twilio_role_client_sid: str = ""
    twilio_role_shipper_sid: str = ""
    twilio_webhook_auth_token: str = ""
    chat_provider_backend: str = "twilio"
    chat_store_backend: str = "inmemory"
    database_url: str = ""
    chat_webhook_signature_mode: str = "enforce"
    chat_session_secret: str = ""
    chat_token_default_ttl_seconds: int = 2700
    chat_token_max_ttl_seconds: int = 86400
    chat_seed_default_participants: bool = True
    chat_message_preview_limit: int = 500
    cors_allowed_origin: str = "http://localhost:3000"
    trust_proxy_headers: bool = False

    def role_ref_for(self, role: str) -> str:
        if role == "shipper":
            return self.twilio_role_shipper_sid.strip()
        return self.twilio_role_client_sid.strip()


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CHAT_APP_NAME", "Quote Chat"),
        api_prefix=os.getenv("CHAT_API_PREFIX", "/api/v1"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_api_key=os.getenv("TWILIO_API_KEY", "").strip(),
        twilio_api_secret=os.getenv("TWILIO_API_SECRET", "").strip(),
        twilio_conversations_service_sid=os.getenv("TWILIO_CONVERSATIONS_SERVICE_SID", "").strip(),
        twilio_role_client_sid=os.getenv("TWILIO_ROLE_CLIENT_SID", "").strip(),
        twilio_role_shipper_sid=os.getenv("TWILIO_ROLE_SHIPPER_SID", "").strip(),
        twilio_webhook_auth_token=_first_env("TWILIO_WEBHOOK_AUTH_TOKEN", "TWILIO_AUTH_TOKEN"),
        chat_provider_backend=_normalize_mode(
            os.getenv("CHAT_PROVIDER_BACKEND"),
            default="twilio",
            allowed={"twilio", "stub"},
        ),
        chat_store_backend=os.getenv("CHAT_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        chat_webhook_signature_mode=_normalize_mode(
            os.getenv("CHAT_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        chat_session_secret=os.getenv("CHAT_SESSION_SECRET", ""),
        chat_token_default_ttl_seconds=_as_int(os.getenv("CHAT_TOKEN_DEFAULT_TTL_SECONDS"), 2700),
        chat_token_max_ttl_seconds=_as_int(os.getenv("CHAT_TOKEN_MAX_TTL_SECONDS"), 86400),
        chat_seed_default_participants=_as_bool(os.getenv("CHAT_SEED_DEFAULT_PARTICIPANTS"), True),
        chat_message_preview_limit=_as_int(os.getenv("CHAT_MESSAGE_PREVIEW_LIMIT"), 500),
        cors_allowed_origin=os.getenv("CORS_ALLOWED_ORIGIN", "http://localhost:3000"),
        trust_proxy_headers=_as_bool(os.getenv("TRUST_PROXY_HEADERS"), False),
    )


_REQUIRED_SETTINGS = (
    ("TWILIO_ACCOUNT_SID", "twilio_account_sid"),
    ("TWILIO_API_KEY", "twilio_api_key"),
    ("TWILIO_API_SECRET", "twilio_api_secret"),
    ("TWILIO_CONVERSATIONS_SERVICE_SID", "twilio_conversations_service_sid"),
)


def missing_required_settings(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = [env_name for env_name, attr in _REQUIRED_SETTINGS if not getattr(settings, attr)]
    if settings.chat_webhook_signature_mode == "enforce" and not settings.twilio_webhook_auth_token:
        issues.append("TWILIO_WEBHOOK_AUTH_TOKEN (or TWILIO_AUTH_TOKEN)")
    if settings.chat_store_backend.strip().lower() == "postgres" and not settings.database_url:
        issues.append("DATABASE_URL")
    if _is_placeholder(settings.chat_session_secret):
        issues.append("CHAT_SESSION_SECRET (empty or a development placeholder)")
    return tuple(issues)
