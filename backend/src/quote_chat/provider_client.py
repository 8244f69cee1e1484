from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from itertools import count
from threading import Lock
from typing import Any, Protocol

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .errors import ProviderConflictError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Twilio error code for "Participant already exists".
_DUPLICATE_PARTICIPANT_CODE = 50416
_PARTICIPANT_PAGE_SIZE = 100


@dataclass(frozen=True)
class ProviderConversation:
    sid: str
    unique_name: str | None
    friendly_name: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderParticipant:
    sid: str
    identity: str
    role_ref: str | None = None


def _parse_attributes(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("conversation attributes are not valid JSON")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_attributes(attributes: dict[str, Any] | None) -> str:
    return json.dumps(attributes or {}, separators=(",", ":"), sort_keys=True)


class ConversationProviderClient(Protocol):
    def create_conversation(
        self,
        unique_name: str,
        *,
        friendly_name: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> ProviderConversation: ...

    def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation | None: ...

    def update_attributes(self, sid: str, attributes: dict[str, Any]) -> None: ...

    def add_participant(self, sid: str, identity: str, *, role_ref: str | None = None) -> ProviderParticipant | None: ...

    def remove_participant(self, sid: str, identity: str) -> bool: ...


class InMemoryConversationProvider:
    """Provider double that keeps conversations in process memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._participant_counter = count(1)
        self._conversations: dict[str, ProviderConversation] = {}
        self._by_unique_name: dict[str, str] = {}
        self._participants: dict[str, dict[str, ProviderParticipant]] = {}
        self.calls: list[tuple[str, ...]] = []

    def create_conversation(
        self,
        unique_name: str,
        *,
        friendly_name: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> ProviderConversation:
        with self._lock:
            self.calls.append(("create_conversation", unique_name))
            if unique_name in self._by_unique_name:
                raise ProviderConflictError(f"conversation already exists: {unique_name}")
            sid = f"CH{next(self._conversation_counter):032d}"
            conversation = ProviderConversation(
                sid=sid,
                unique_name=unique_name,
                friendly_name=friendly_name,
                attributes=dict(attributes or {}),
            )
            self._conversations[sid] = conversation
            self._by_unique_name[unique_name] = sid
            self._participants[sid] = {}
            return conversation

    def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation | None:
        with self._lock:
            self.calls.append(("fetch_conversation", sid_or_unique_name))
            sid = self._by_unique_name.get(sid_or_unique_name, sid_or_unique_name)
            return self._conversations.get(sid)

    def update_attributes(self, sid: str, attributes: dict[str, Any]) -> None:
        with self._lock:
            self.calls.append(("update_attributes", sid))
            current = self._conversations.get(sid)
            if current is None:
                raise ProviderUnavailableError(f"conversation not found: {sid}")
            self._conversations[sid] = ProviderConversation(
                sid=current.sid,
                unique_name=current.unique_name,
                friendly_name=current.friendly_name,
                attributes=dict(attributes),
            )

    def add_participant(self, sid: str, identity: str, *, role_ref: str | None = None) -> ProviderParticipant | None:
        with self._lock:
            self.calls.append(("add_participant", sid, identity))
            members = self._participants.get(sid)
            if members is None:
                raise ProviderUnavailableError(f"conversation not found: {sid}")
            if identity in members:
                return None
            participant = ProviderParticipant(
                sid=f"MB{next(self._participant_counter):032d}",
                identity=identity,
                role_ref=role_ref or None,
            )
            members[identity] = participant
            return participant

    def remove_participant(self, sid: str, identity: str) -> bool:
        with self._lock:
            self.calls.append(("remove_participant", sid, identity))
            members = self._participants.get(sid, {})
            return members.pop(identity, None) is not None

    def participant_identities(self, sid: str) -> set[str]:
        with self._lock:
            return set(self._participants.get(sid, {}))

    def calls_named(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]


class TwilioConversationProvider:
    """Conversation provider backed by a Twilio Conversations service."""

    def __init__(
        self,
        *,
        account_sid: str,
        api_key: str,
        api_secret: str,
        service_sid: str,
        client: Client | None = None,
    ) -> None:
        if not (account_sid and api_key and api_secret and service_sid):
            raise ValueError("Twilio account sid, API key, API secret and service sid are required")
        self._client = client or Client(api_key, api_secret, account_sid)
        self._service_sid = service_sid

    @property
    def _service(self):
        return self._client.conversations.v1.services(self._service_sid)

    def create_conversation(
        self,
        unique_name: str,
        *,
        friendly_name: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> ProviderConversation:
        try:
            created = self._service.conversations.create(
                unique_name=unique_name,
                friendly_name=friendly_name or unique_name,
                attributes=_dump_attributes(attributes),
            )
        except TwilioRestException as exc:
            if exc.status == 409:
                raise ProviderConflictError(f"conversation already exists: {unique_name}") from exc
            raise ProviderUnavailableError(f"twilio conversation create failed: {exc.msg}") from exc
        return self._to_conversation(created)

    def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation | None:
        try:
            fetched = self._service.conversations(sid_or_unique_name).fetch()
        except TwilioRestException as exc:
            if exc.status == 404:
                return None
            raise ProviderUnavailableError(f"twilio conversation fetch failed: {exc.msg}") from exc
        return self._to_conversation(fetched)

    def update_attributes(self, sid: str, attributes: dict[str, Any]) -> None:
        try:
            self._service.conversations(sid).update(attributes=_dump_attributes(attributes))
        except TwilioRestException as exc:
            raise ProviderUnavailableError(f"twilio attribute update failed: {exc.msg}") from exc

    def add_participant(self, sid: str, identity: str, *, role_ref: str | None = None) -> ProviderParticipant | None:
        params: dict[str, Any] = {"identity": identity}
        if role_ref:
            params["role_sid"] = role_ref
        try:
            created = self._service.conversations(sid).participants.create(**params)
        except TwilioRestException as exc:
            if exc.status == 409 or exc.code == _DUPLICATE_PARTICIPANT_CODE:
                logger.info("participant %s already in conversation %s", identity, sid)
                return None
            raise ProviderUnavailableError(f"twilio participant add failed: {exc.msg}") from exc
        return ProviderParticipant(sid=created.sid, identity=created.identity, role_ref=getattr(created, "role_sid", None))

    def remove_participant(self, sid: str, identity: str) -> bool:
        try:
            # stream() pages through the whole roster.
            participants = self._service.conversations(sid).participants.stream(page_size=_PARTICIPANT_PAGE_SIZE)
            match = next((item for item in participants if item.identity == identity), None)
            if match is None:
                return False
            self._service.conversations(sid).participants(match.sid).delete()
            return True
        except TwilioRestException as exc:
            logger.warning("twilio participant removal failed for %s in %s: %s", identity, sid, exc.msg)
            return False

    @staticmethod
    def _to_conversation(resource: Any) -> ProviderConversation:
        return ProviderConversation(
            sid=resource.sid,
            unique_name=resource.unique_name,
            friendly_name=resource.friendly_name,
            attributes=_parse_attributes(resource.attributes),
        )


def create_provider_client(settings) -> ConversationProviderClient:
    if settings.chat_provider_backend == "stub":
        return InMemoryConversationProvider()
    return TwilioConversationProvider(
        account_sid=settings.twilio_account_sid,
        api_key=settings.twilio_api_key,
        api_secret=settings.twilio_api_secret,
        service_sid=settings.twilio_conversations_service_sid,
    )
