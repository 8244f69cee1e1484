from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from quote_chat.main import create_app
from quote_chat.webhooks import (
    build_webhook_url,
    media_summary,
    parse_timestamp,
    parse_webhook_payload,
    read_field,
)

from conftest import build_world

WEBHOOK_URL = "http://testserver/api/v1/chat/webhooks/conversations"
WEBHOOK_TOKEN = "webhook-auth-token"
FORM = "application/x-www-form-urlencoded"


def _thread_with_participant(world, user_id: str = "u-viewer"):
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread
    orchestrator.ensure_participant_in_thread(thread.thread_id, user_id)
    return thread


def _message_event(thread, **overrides) -> dict:
    event = {
        "eventType": "onMessageAdded",
        "conversationSid": thread.provider_conversation_id,
        "messageSid": "IM0001",
        "author": "client:u-viewer",
        "body": "Crate dimensions attached",
        "dateCreated": "2026-10-01T12:00:00Z",
    }
    event.update(overrides)
    return event


def test_message_replay_records_a_single_audit_row(world) -> None:
    thread = _thread_with_participant(world)
    ingestor = world.services.ingestor
    event = _message_event(thread)

    first = ingestor.handle(event)
    second = ingestor.handle(event)

    assert first.status == second.status == "recorded"
    rows = world.store.list_message_audit(thread.thread_id)
    assert len(rows) == 1
    assert rows[0].author_identity == "client:u-viewer"
    assert rows[0].author_user_id == "u-viewer"
    assert rows[0].body_preview == "Crate dimensions attached"
    assert world.store.get_thread(thread.thread_id).last_message_at == datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def test_older_message_does_not_rewind_last_message_at(world) -> None:
    thread = _thread_with_participant(world)
    ingestor = world.services.ingestor

    ingestor.handle(_message_event(thread, messageSid="IM0002", dateCreated="2026-10-01T12:00:00Z"))
    ingestor.handle(_message_event(thread, messageSid="IM0001", dateCreated="2026-10-01T11:00:00Z"))

    assert world.store.get_thread(thread.thread_id).last_message_at == datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    assert [row.message_sid for row in world.store.list_message_audit(thread.thread_id)] == ["IM0001", "IM0002"]


def test_unparseable_timestamp_falls_back_to_receipt_time(world) -> None:
    thread = _thread_with_participant(world)
    before = datetime.now(timezone.utc)

    world.services.ingestor.handle(_message_event(thread, dateCreated="yesterday-ish"))

    sent_at = world.store.list_message_audit(thread.thread_id)[0].sent_at
    assert before - timedelta(seconds=1) <= sent_at <= datetime.now(timezone.utc) + timedelta(seconds=1)


def test_message_preview_is_truncated_and_media_summarized() -> None:
    world = build_world(chat_message_preview_limit=5)
    thread = _thread_with_participant(world)

    world.services.ingestor.handle(
        _message_event(
            thread,
            body="0123456789",
            media=[{"sid": "ME1", "content_type": "application/pdf", "size": 2048, "filename": "packing.pdf"}],
        )
    )

    row = world.store.list_message_audit(thread.thread_id)[0]
    assert row.body_preview == "01234"
    assert row.media == [{"sid": "ME1", "contentType": "application/pdf", "size": 2048, "filename": "packing.pdf"}]


def test_message_without_sid_is_skipped(world) -> None:
    thread = _thread_with_participant(world)

    result = world.services.ingestor.handle(_message_event(thread, messageSid=None))

    assert result.status == "skipped"
    assert world.store.list_message_audit(thread.thread_id) == []


def test_participant_updated_advances_read_state(world) -> None:
    thread = _thread_with_participant(world)
    ingestor = world.services.ingestor
    base = {
        "eventType": "onParticipantUpdated",
        "conversationSid": thread.provider_conversation_id,
        "participantIdentity": "client:u-viewer",
    }

    assert ingestor.handle({**base, "lastReadMessageIndex": "4", "lastReadTimestamp": "2026-10-01T12:05:00Z"}).status == "recorded"
    assert ingestor.handle({**base, "lastReadMessageIndex": 2}).status == "unchanged"

    participant = world.store.get_participant(thread.thread_id, "u-viewer")
    assert participant.last_read_message_index == 4
    assert participant.last_read_at == datetime(2026, 10, 1, 12, 5, tzinfo=timezone.utc)


def _departure_event(thread, left_at: datetime, user_id: str = "u-viewer") -> dict:
    return {
        "eventType": "onParticipantRemoved",
        "conversationSid": thread.provider_conversation_id,
        "participantIdentity": f"client:{user_id}",
        "timestamp": left_at.isoformat(),
    }


def test_participant_left_marks_row_once(world) -> None:
    thread = _thread_with_participant(world)
    ingestor = world.services.ingestor
    left_at = (world.store.get_participant(thread.thread_id, "u-viewer").joined_at + timedelta(minutes=1)).replace(
        microsecond=0
    )
    event = _departure_event(thread, left_at)

    assert ingestor.handle(event).status == "recorded"
    assert ingestor.handle({**event, "eventType": "onParticipantLeft"}).status == "unchanged"
    assert world.store.get_participant(thread.thread_id, "u-viewer").left_at == left_at


def test_stale_departure_does_not_remove_rejoined_participant(world) -> None:
    thread = _thread_with_participant(world)
    ingestor = world.services.ingestor
    joined_at = world.store.get_participant(thread.thread_id, "u-viewer").joined_at
    stale = _departure_event(thread, joined_at - timedelta(minutes=5))

    assert ingestor.handle(stale).status == "unchanged"

    assert ingestor.handle(_departure_event(thread, joined_at)).status == "recorded"
    world.services.orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer")
    assert ingestor.handle(stale).status == "unchanged"

    participant = world.store.get_participant(thread.thread_id, "u-viewer")
    assert participant.left_at is None
    assert participant.joined_at > joined_at - timedelta(minutes=5)
    assert "u-viewer" in [row.user_id for row in world.store.list_participants(thread.thread_id, active_only=True)]


def test_participant_events_for_unknown_conversation_are_skipped(world) -> None:
    result = world.services.ingestor.handle(
        {"eventType": "onParticipantUpdated", "conversationSid": "CH-unknown", "participantIdentity": "client:u-viewer"}
    )
    assert result.status == "skipped"


def test_unknown_event_is_ignored(world) -> None:
    result = world.services.ingestor.handle({"eventType": "onConversationStateUpdated"})
    assert result.status == "ignored"
    assert world.services.ingestor.handle({}).status == "ignored"


def test_message_for_unknown_conversation_backfills_thread(world) -> None:
    conversation = world.provider.create_conversation(
        "quote::Q1",
        friendly_name="Quote One",
        attributes={"quoteId": "Q1", "createdBy": "u-admin"},
    )

    result = world.services.ingestor.handle(
        {
            "eventType": "onMessageAdded",
            "conversationSid": conversation.sid,
            "messageSid": "IM0100",
            "author": "client:u-viewer",
            "body": "hello",
        }
    )

    assert result.status == "recorded"
    thread = world.store.get_thread_by_provider_conversation_id(conversation.sid)
    assert thread is not None
    assert thread.quote_id == "Q1"
    assert thread.created_by == "u-admin"
    assert len(world.store.list_message_audit(thread.thread_id)) == 1


def test_backfill_failure_skips_message(world) -> None:
    conversation = world.provider.create_conversation(
        "quote::Q-missing",
        friendly_name="Orphan",
        attributes={"quoteId": "Q-missing"},
    )

    result = world.services.ingestor.handle(
        {
            "eventType": "onMessageAdded",
            "conversationSid": conversation.sid,
            "messageSid": "IM0200",
            "author": "client:u-viewer",
        }
    )

    assert result.status == "skipped"
    assert result.reason == "thread_unresolved"
    assert world.store.get_thread_by_provider_conversation_id(conversation.sid) is None


def test_form_payload_decodes_embedded_json_and_repeated_keys() -> None:
    body = urlencode(
        [
            ("EventType", "onMessageAdded"),
            ("Media", json.dumps([{"Sid": "ME1", "ContentType": "image/jpeg"}])),
            ("Tag", "a"),
            ("Tag", "b"),
        ]
    ).encode("utf-8")

    payload = parse_webhook_payload(body, FORM)

    assert payload["EventType"] == "onMessageAdded"
    assert payload["Media"] == [{"Sid": "ME1", "ContentType": "image/jpeg"}]
    assert payload["Tag"] == ["a", "b"]
    assert media_summary(payload["Media"]) == [
        {"sid": "ME1", "contentType": "image/jpeg", "size": None, "filename": None}
    ]


def test_json_payload_must_be_an_object() -> None:
    assert parse_webhook_payload(b'{"eventType": "onMessageAdded"}', "application/json") == {
        "eventType": "onMessageAdded"
    }
    assert parse_webhook_payload(b"[1, 2]", "application/json") == {}
    assert parse_webhook_payload(b"not json", "application/json") == {}
    assert parse_webhook_payload(b"", FORM) == {}


def test_read_field_and_timestamps() -> None:
    assert read_field({"ConversationSid": "CH1"}, "conversationSid", "ConversationSid") == "CH1"
    assert read_field({"conversationSid": None, "ConversationSid": "CH2"}, "conversationSid", "ConversationSid") == "CH2"
    assert read_field({}, "missing") is None

    expected = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2026-10-01T12:00:00Z") == expected
    assert parse_timestamp(expected.timestamp()) == expected
    assert parse_timestamp(expected.timestamp() * 1000) == expected
    assert parse_timestamp("garbage") is None


def test_build_webhook_url_honours_forwarded_headers() -> None:
    url = "http://internal:8000/api/v1/chat/webhooks/conversations"
    headers = {"x-forwarded-proto": "https, http", "X-Forwarded-Host": "chat.example.com"}

    assert build_webhook_url(url, headers, trust_proxy_headers=False) == url
    assert (
        build_webhook_url(url, headers, trust_proxy_headers=True)
        == "https://chat.example.com/api/v1/chat/webhooks/conversations"
    )
    assert (
        build_webhook_url(url, {"Forwarded": 'for=1.2.3.4;proto="https"'}, trust_proxy_headers=True)
        == "https://internal:8000/api/v1/chat/webhooks/conversations"
    )


def _signed_client(mode: str):
    world = build_world(chat_webhook_signature_mode=mode, twilio_webhook_auth_token=WEBHOOK_TOKEN)
    return world, TestClient(create_app(services=world.services))


def _form_params(thread) -> dict[str, str]:
    return {
        "EventType": "onMessageAdded",
        "ConversationSid": thread.provider_conversation_id,
        "MessageSid": "IM0300",
        "Author": "client:u-viewer",
        "Body": "signed hello",
    }


def test_signed_form_webhook_is_accepted_when_enforced() -> None:
    world, client = _signed_client("enforce")
    thread = _thread_with_participant(world)
    params = _form_params(thread)
    signature = RequestValidator(WEBHOOK_TOKEN).compute_signature(WEBHOOK_URL, params)

    response = client.post(
        "/api/v1/chat/webhooks/conversations",
        content=urlencode(params),
        headers={"Content-Type": FORM, "X-Twilio-Signature": signature},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert [row.message_sid for row in world.store.list_message_audit(thread.thread_id)] == ["IM0300"]


@pytest.mark.parametrize("signature", [None, "bm90LXRoZS1yaWdodC1zaWduYXR1cmU="])
def test_enforced_mode_rejects_missing_or_bad_signature(signature: str | None) -> None:
    world, client = _signed_client("enforce")
    thread = _thread_with_participant(world)
    headers = {"Content-Type": FORM}
    if signature is not None:
        headers["X-Twilio-Signature"] = signature

    response = client.post(
        "/api/v1/chat/webhooks/conversations",
        content=urlencode(_form_params(thread)),
        headers=headers,
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Invalid webhook signature"}
    assert world.store.list_message_audit(thread.thread_id) == []


def test_log_only_mode_processes_unsigned_webhooks() -> None:
    world, client = _signed_client("log_only")
    thread = _thread_with_participant(world)

    response = client.post(
        "/api/v1/chat/webhooks/conversations",
        content=urlencode(_form_params(thread)),
        headers={"Content-Type": FORM},
    )

    assert response.status_code == 200
    assert len(world.store.list_message_audit(thread.thread_id)) == 1


def test_json_webhook_is_accepted_when_signatures_are_off(world, client) -> None:
    thread = _thread_with_participant(world)

    response = client.post("/api/v1/chat/webhooks/conversations", json=_message_event(thread, messageSid="IM0400"))

    assert response.status_code == 200
    assert [row.message_sid for row in world.store.list_message_audit(thread.thread_id)] == ["IM0400"]


def test_signed_json_webhook_is_accepted_when_enforced() -> None:
    world, client = _signed_client("enforce")
    thread = _thread_with_participant(world)
    signature = RequestValidator(WEBHOOK_TOKEN).compute_signature(WEBHOOK_URL, {})

    response = client.post(
        "/api/v1/chat/webhooks/conversations",
        content=json.dumps(_message_event(thread, messageSid="IM0500")),
        headers={"Content-Type": "application/json", "X-Twilio-Signature": signature},
    )

    assert response.status_code == 200
    assert [row.message_sid for row in world.store.list_message_audit(thread.thread_id)] == ["IM0500"]


def test_json_webhook_with_bad_signature_is_rejected() -> None:
    world, client = _signed_client("enforce")
    thread = _thread_with_participant(world)

    response = client.post(
        "/api/v1/chat/webhooks/conversations",
        content=json.dumps(_message_event(thread, messageSid="IM0501")),
        headers={"Content-Type": "application/json", "X-Twilio-Signature": "bogus"},
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Invalid webhook signature"}
    assert world.store.list_message_audit(thread.thread_id) == []


@pytest.mark.parametrize("tampered, expected_status", [(False, 200), (True, 403)])
def test_json_webhook_body_hash_is_checked(tampered: bool, expected_status: int) -> None:
    world, client = _signed_client("enforce")
    thread = _thread_with_participant(world)
    validator = RequestValidator(WEBHOOK_TOKEN)
    body = json.dumps(_message_event(thread, messageSid="IM0502"))
    query = urlencode({"bodySHA256": validator.compute_hash(body)})
    signature = validator.compute_signature(f"{WEBHOOK_URL}?{query}", {})
    if tampered:
        body = json.dumps(_message_event(thread, messageSid="IM0502", body="edited in transit"))

    response = client.post(
        f"/api/v1/chat/webhooks/conversations?{query}",
        content=body,
        headers={"Content-Type": "application/json", "X-Twilio-Signature": signature},
    )

    assert response.status_code == expected_status
    assert len(world.store.list_message_audit(thread.thread_id)) == (0 if tampered else 1)
