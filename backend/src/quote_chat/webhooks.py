from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from fastapi.datastructures import FormData
from twilio.request_validator import RequestValidator

from .config import Settings
from .errors import ChatError
from .identity import decode_identity
from .orchestrator import ThreadOrchestrator
from .provider_client import ConversationProviderClient
from .thread_store import MessageAuditInput, ThreadRecord, ThreadStore

logger = logging.getLogger(__name__)

_FORWARDED_PROTO = re.compile(r"proto=([^;,\s]+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def build_webhook_url(url: str, headers: Mapping[str, str], *, trust_proxy_headers: bool) -> str:
    """Rebuild the public URL the provider signed when running behind a proxy."""
    if not trust_proxy_headers:
        return url
    parts = urlsplit(url)
    proto = _normalize_header_value(headers, "X-Forwarded-Proto") or _normalize_header_value(
        headers, "X-Forwarded-Protocol"
    )
    if proto:
        proto = proto.split(",")[0].strip()
    else:
        forwarded = _normalize_header_value(headers, "Forwarded")
        match = _FORWARDED_PROTO.search(forwarded) if forwarded else None
        proto = match.group(1).strip('"') if match else None
    host = _normalize_header_value(headers, "X-Forwarded-Host")
    if host:
        host = host.split(",")[0].strip()
    return urlunsplit((proto or parts.scheme, host or parts.netloc, parts.path, parts.query, parts.fragment))


def verify_webhook_signature(
    *,
    settings: Settings,
    url: str,
    raw_body: bytes,
    content_type: str,
    headers: Mapping[str, str],
) -> WebhookVerification:
    mode = settings.chat_webhook_signature_mode
    if mode == "off":
        return WebhookVerification(verified=True)

    auth_token = settings.twilio_webhook_auth_token.strip()
    if not auth_token:
        return WebhookVerification(verified=False, reason="webhook_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    body_text = raw_body.decode("utf-8", errors="replace")
    if _is_form(content_type):
        params: Any = FormData(parse_qsl(body_text, keep_blank_values=True))
    elif "bodySHA256" in dict(parse_qsl(urlsplit(url).query)):
        # The validator checks the raw body against the bodySHA256 hash carried in the URL.
        params = body_text
    else:
        # Without a body hash, JSON deliveries are signed over the URL alone.
        params = {}
    try:
        valid = validator.validate(url, params, provided)
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning("webhook signature could not be validated: %s", exc)
        valid = False
    if not valid:
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


def _is_form(content_type: str) -> bool:
    return "application/x-www-form-urlencoded" in (content_type or "").lower()


def _decode_embedded_json(value: str) -> Any:
    trimmed = value.strip()
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (trimmed.startswith("[") and trimmed.endswith("]")):
        try:
            return json.loads(trimmed)
        except ValueError:
            return value
    return value


def parse_webhook_payload(raw_body: bytes, content_type: str) -> dict[str, Any]:
    if not raw_body:
        return {}
    body_text = raw_body.decode("utf-8", errors="replace")

    if _is_form(content_type):
        grouped: dict[str, list[Any]] = {}
        for key, raw in parse_qsl(body_text, keep_blank_values=True):
            grouped.setdefault(key, []).append(_decode_embedded_json(raw))
        return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}

    try:
        parsed_json = json.loads(body_text)
    except ValueError:
        logger.warning("conversation webhook body is not valid JSON")
        return {}
    return parsed_json if isinstance(parsed_json, dict) else {}


def read_field(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def timestamp_or_now(value: Any) -> datetime:
    return parse_timestamp(value) or datetime.now(timezone.utc)


def _as_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def media_summary(media: Any) -> list[dict[str, Any]] | None:
    if isinstance(media, dict):
        media = [media]
    if not isinstance(media, list):
        return None
    return [
        {
            "sid": item.get("sid") or item.get("Sid"),
            "contentType": item.get("contentType") or item.get("content_type") or item.get("ContentType"),
            "size": item.get("size") or item.get("Size"),
            "filename": item.get("filename") or item.get("Filename"),
        }
        for item in media
        if isinstance(item, dict)
    ]


# ---------------------------------------------------------------------------
# Event ingestion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebhookResult:
    event_type: str
    status: str
    thread_id: str | None = None
    reason: str | None = None


class WebhookIngestor:
    def __init__(
        self,
        *,
        store: ThreadStore,
        orchestrator: ThreadOrchestrator,
        provider: ConversationProviderClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._provider = provider
        self._preview_limit = max(0, settings.chat_message_preview_limit)

    def handle(self, payload: Mapping[str, Any]) -> WebhookResult:
        raw_event_type = read_field(payload, "eventType", "EventType")
        event_type = raw_event_type if isinstance(raw_event_type, str) else ""

        if event_type == "onMessageAdded":
            return self._on_message_added(payload)
        if event_type == "onParticipantUpdated":
            return self._on_participant_updated(payload)
        if event_type in {"onParticipantRemoved", "onParticipantLeft"}:
            return self._on_participant_left(event_type, payload)

        logger.info("ignoring unhandled conversation event %r", event_type)
        return WebhookResult(event_type=event_type, status="ignored", reason="unhandled_event")

    def _on_message_added(self, payload: Mapping[str, Any]) -> WebhookResult:
        event_type = "onMessageAdded"
        conversation_sid = read_field(payload, "conversationSid", "ConversationSid")
        message_sid = read_field(payload, "messageSid", "MessageSid")
        if not conversation_sid or not message_sid:
            logger.warning("message event missing conversation or message sid")
            return WebhookResult(event_type=event_type, status="skipped", reason="missing_sid")

        raw_author = read_field(payload, "author", "Author")
        author = decode_identity(raw_author) if isinstance(raw_author, str) and raw_author else None

        thread = self._store.get_thread_by_provider_conversation_id(conversation_sid)
        if thread is None:
            thread = self._backfill_thread(conversation_sid, fallback_initiator=author.user_id if author else None)
        if thread is None:
            logger.warning("dropping message %s: no thread for conversation %s", message_sid, conversation_sid)
            return WebhookResult(event_type=event_type, status="skipped", reason="thread_unresolved")

        body = read_field(payload, "body", "Body")
        delivery = read_field(payload, "delivery", "deliveryStatus", "DeliveryStatus")
        sent_at = timestamp_or_now(read_field(payload, "dateCreated", "DateCreated", "messageDateCreated", "timestamp"))

        self._store.record_message_audit(
            MessageAuditInput(
                thread_id=thread.thread_id,
                message_sid=message_sid,
                author_identity=str(author) if author is not None else "unknown",
                author_user_id=author.user_id if author is not None else None,
                body_preview=body[: self._preview_limit] if isinstance(body, str) else None,
                media=media_summary(read_field(payload, "media", "Media")),
                sent_at=sent_at,
                delivery_status=delivery if isinstance(delivery, str) else None,
            )
        )
        self._store.update_thread_last_message_at(thread.thread_id, sent_at)
        return WebhookResult(event_type=event_type, status="recorded", thread_id=thread.thread_id)

    def _on_participant_updated(self, payload: Mapping[str, Any]) -> WebhookResult:
        event_type = "onParticipantUpdated"
        thread, identity = self._resolve_participant_event(payload)
        if thread is None or identity is None:
            return WebhookResult(event_type=event_type, status="skipped", reason="thread_or_identity_unresolved")

        raw_read_at = read_field(payload, "lastReadTimestamp", "LastReadTimestamp")
        changed = self._store.update_participant_read_state(
            thread.thread_id,
            identity,
            last_read_message_index=_as_index(read_field(payload, "lastReadMessageIndex", "LastReadMessageIndex")),
            last_read_at=timestamp_or_now(raw_read_at) if raw_read_at else None,
        )
        return WebhookResult(
            event_type=event_type,
            status="recorded" if changed else "unchanged",
            thread_id=thread.thread_id,
        )

    def _on_participant_left(self, event_type: str, payload: Mapping[str, Any]) -> WebhookResult:
        thread, identity = self._resolve_participant_event(payload)
        if thread is None or identity is None:
            return WebhookResult(event_type=event_type, status="skipped", reason="thread_or_identity_unresolved")

        left_at = timestamp_or_now(read_field(payload, "timestamp", "dateCreated", "DateCreated"))
        changed = self._store.mark_participant_left(thread.thread_id, identity, left_at)
        return WebhookResult(
            event_type=event_type,
            status="recorded" if changed else "unchanged",
            thread_id=thread.thread_id,
        )

    def _resolve_participant_event(self, payload: Mapping[str, Any]) -> tuple[ThreadRecord | None, str | None]:
        conversation_sid = read_field(payload, "conversationSid", "ConversationSid")
        if not conversation_sid:
            return None, None
        thread = self._store.get_thread_by_provider_conversation_id(conversation_sid)
        if thread is None:
            return None, None
        identity = read_field(payload, "participantIdentity", "ParticipantIdentity", "identity", "Identity")
        if not isinstance(identity, str) or not identity:
            return thread, None
        return thread, identity.strip()

    def _backfill_thread(self, conversation_sid: str, *, fallback_initiator: str | None) -> ThreadRecord | None:
        try:
            conversation = self._provider.fetch_conversation(conversation_sid)
            if conversation is None:
                logger.warning("backfill: conversation %s not found at provider", conversation_sid)
                return None
            attributes = conversation.attributes

            quote_id = read_field(attributes, "quoteId", "quote_id")
            if not quote_id:
                logger.warning("backfill: no quote id in attributes of conversation %s", conversation_sid)
                return None
            initiator = (
                read_field(attributes, "createdBy", "initiatorUserId", "initiator_user_id") or fallback_initiator
            )
            if not initiator:
                logger.warning("backfill: no initiator for conversation %s (quote %s)", conversation_sid, quote_id)
                return None

            result = self._orchestrator.ensure_thread_for_quote(
                quote_id=str(quote_id),
                initiator_user_id=str(initiator),
                shipper_branch_org_id=read_field(attributes, "shipperBranchOrgId", "shipper_branch_org_id"),
                gallery_branch_org_id=read_field(attributes, "galleryBranchOrgId", "gallery_branch_org_id"),
            )
        except ChatError as exc:
            logger.warning("backfill for conversation %s failed: %s", conversation_sid, exc.message)
            return None

        if result.thread.provider_conversation_id != conversation_sid:
            logger.warning(
                "backfill for conversation %s resolved thread %s bound to %s",
                conversation_sid,
                result.thread.thread_id,
                result.thread.provider_conversation_id,
            )
        logger.info("backfilled thread %s for conversation %s", result.thread.thread_id, conversation_sid)
        return result.thread
