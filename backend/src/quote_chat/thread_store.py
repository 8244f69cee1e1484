from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import NotFoundError, PersistenceError, ThreadScopeConflictError
from .models import (
    ConversationType,
    GalleryThreadMetadata,
    ShipperPeerThreadMetadata,
    parse_thread_metadata,
)

ThreadMetadataDocument = GalleryThreadMetadata | ShipperPeerThreadMetadata

_UPSERT_ATTEMPTS = 3


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ThreadScope:
    quote_id: str | None
    shipment_id: str | None
    shipper_branch_org_id: str | None
    gallery_branch_org_id: str | None
    conversation_type: ConversationType

    def scope_key(self) -> str:
        if self.quote_id:
            anchor = ["quote", self.quote_id]
        elif self.shipment_id:
            anchor = ["shipment", self.shipment_id]
        else:
            raise ValueError("thread scope requires a quote id or a shipment id")
        # JSON keeps null distinct from "" and escapes separators inside ids.
        return json.dumps(
            [*anchor, self.shipper_branch_org_id, self.gallery_branch_org_id, self.conversation_type],
            separators=(",", ":"),
        )

    @property
    def is_unscoped(self) -> bool:
        return self.shipper_branch_org_id is None and self.gallery_branch_org_id is None


@dataclass(frozen=True)
class ThreadRecord:
    thread_id: str
    quote_id: str | None
    shipment_id: str | None
    organization_id: str
    shipper_branch_org_id: str | None
    gallery_branch_org_id: str | None
    provider_conversation_id: str
    provider_unique_name: str | None
    status: str
    last_message_at: datetime | None
    metadata: ThreadMetadataDocument
    created_by: str
    conversation_type: ConversationType
    initiator_shipper_org_id: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def scope(self) -> ThreadScope:
        return ThreadScope(
            quote_id=self.quote_id,
            shipment_id=self.shipment_id,
            shipper_branch_org_id=self.shipper_branch_org_id,
            gallery_branch_org_id=self.gallery_branch_org_id,
            conversation_type=self.conversation_type,
        )


@dataclass(frozen=True)
class ParticipantRecord:
    participant_id: str
    thread_id: str
    user_id: str
    organization_id: str | None
    role: str
    provider_identity: str
    provider_role_ref: str
    joined_at: datetime
    left_at: datetime | None
    last_read_message_index: int | None
    last_read_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.left_at is None


@dataclass(frozen=True)
class ThreadShipperRecord:
    thread_shipper_id: str
    thread_id: str
    shipper_branch_org_id: str
    role: str
    created_at: datetime


@dataclass(frozen=True)
class MessageAuditRecord:
    thread_id: str
    message_sid: str
    author_identity: str
    author_user_id: str | None
    body_preview: str | None
    media: list[dict[str, Any]] | None
    sent_at: datetime
    delivery_status: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageAuditInput:
    thread_id: str
    message_sid: str
    author_identity: str
    sent_at: datetime
    author_user_id: str | None = None
    body_preview: str | None = None
    media: list[dict[str, Any]] | None = None
    delivery_status: str | None = None


class ThreadStore(Protocol):
    def reset(self) -> None: ...

    def get_thread(self, thread_id: str) -> ThreadRecord | None: ...

    def get_thread_by_quote_id(self, quote_id: str) -> ThreadRecord | None: ...

    def find_thread_by_scope(self, scope: ThreadScope) -> ThreadRecord | None: ...

    def get_thread_by_provider_conversation_id(self, conversation_id: str) -> ThreadRecord | None: ...

    def get_thread_by_unique_name(self, unique_name: str) -> ThreadRecord | None: ...

    def create_thread(
        self,
        *,
        scope: ThreadScope,
        organization_id: str,
        provider_conversation_id: str,
        provider_unique_name: str | None,
        metadata: ThreadMetadataDocument,
        created_by: str,
        initiator_shipper_org_id: str | None = None,
        status: str = "active",
    ) -> ThreadRecord: ...

    def update_thread_scope(
        self,
        thread_id: str,
        *,
        shipper_branch_org_id: str | None = UNSET,
        gallery_branch_org_id: str | None = UNSET,
        metadata: ThreadMetadataDocument = UNSET,
    ) -> ThreadRecord: ...

    def update_thread_last_message_at(self, thread_id: str, message_at: datetime) -> bool: ...

    def ensure_thread_shipper(self, thread_id: str, shipper_branch_org_id: str, role: str) -> ThreadShipperRecord: ...

    def list_thread_shippers(self, thread_id: str) -> list[ThreadShipperRecord]: ...

    def upsert_participant(
        self,
        *,
        thread_id: str,
        user_id: str,
        organization_id: str | None,
        role: str,
        provider_identity: str,
        provider_role_ref: str,
    ) -> ParticipantRecord: ...

    def get_participant(self, thread_id: str, user_id: str) -> ParticipantRecord | None: ...

    def list_participants(self, thread_id: str, *, active_only: bool = False) -> list[ParticipantRecord]: ...

    def update_participant_read_state(
        self,
        thread_id: str,
        provider_identity: str,
        *,
        last_read_message_index: int | None,
        last_read_at: datetime | None,
    ) -> bool: ...

    def mark_participant_left(self, thread_id: str, provider_identity: str, left_at: datetime) -> bool: ...

    def record_message_audit(self, payload: MessageAuditInput) -> MessageAuditRecord: ...

    def list_message_audit(self, thread_id: str) -> list[MessageAuditRecord]: ...


def _advance_read_state(
    current_index: int | None,
    current_at: datetime | None,
    new_index: int | None,
    new_at: datetime | None,
) -> tuple[int | None, datetime | None]:
    # Read receipts arrive out of order; never move either cursor backwards.
    index = current_index
    if new_index is not None and (current_index is None or new_index >= current_index):
        index = new_index
    read_at = current_at
    if new_at is not None and (current_at is None or new_at >= current_at):
        read_at = new_at
    return index, read_at


class InMemoryThreadStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._thread_counter = count(1)
        self._participant_counter = count(1)
        self._shipper_counter = count(1)
        self._threads: dict[str, ThreadRecord] = {}
        self._thread_by_scope: dict[str, str] = {}
        self._thread_by_unique_name: dict[str, str] = {}
        self._participants: dict[tuple[str, str], ParticipantRecord] = {}
        self._shippers: dict[tuple[str, str], ThreadShipperRecord] = {}
        self._audit: dict[tuple[str, str], MessageAuditRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._thread_counter = count(1)
            self._participant_counter = count(1)
            self._shipper_counter = count(1)
            self._threads.clear()
            self._thread_by_scope.clear()
            self._thread_by_unique_name.clear()
            self._participants.clear()
            self._shippers.clear()
            self._audit.clear()

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with self._lock:
            return self._threads.get(thread_id)

    def get_thread_by_quote_id(self, quote_id: str) -> ThreadRecord | None:
        with self._lock:
            candidates = [
                thread
                for thread in self._threads.values()
                if thread.quote_id == quote_id and thread.conversation_type == "gallery" and thread.scope.is_unscoped
            ]
        if not candidates:
            return None
        return min(candidates, key=lambda value: value.created_at)

    def find_thread_by_scope(self, scope: ThreadScope) -> ThreadRecord | None:
        with self._lock:
            thread_id = self._thread_by_scope.get(scope.scope_key())
            return self._threads.get(thread_id) if thread_id is not None else None

    def get_thread_by_provider_conversation_id(self, conversation_id: str) -> ThreadRecord | None:
        with self._lock:
            for thread in self._threads.values():
                if thread.provider_conversation_id == conversation_id:
                    return thread
        return None

    def get_thread_by_unique_name(self, unique_name: str) -> ThreadRecord | None:
        with self._lock:
            thread_id = self._thread_by_unique_name.get(unique_name)
            return self._threads.get(thread_id) if thread_id is not None else None

    def create_thread(
        self,
        *,
        scope: ThreadScope,
        organization_id: str,
        provider_conversation_id: str,
        provider_unique_name: str | None,
        metadata: ThreadMetadataDocument,
        created_by: str,
        initiator_shipper_org_id: str | None = None,
        status: str = "active",
    ) -> ThreadRecord:
        scope_key = scope.scope_key()
        with self._lock:
            if scope_key in self._thread_by_scope:
                raise ThreadScopeConflictError(f"thread already exists for scope {scope_key}")
            if provider_unique_name and provider_unique_name in self._thread_by_unique_name:
                raise ThreadScopeConflictError(f"thread already exists for unique name {provider_unique_name}")
            now = _now_utc()
            thread = ThreadRecord(
                thread_id=f"thread_{next(self._thread_counter):06d}",
                quote_id=scope.quote_id,
                shipment_id=scope.shipment_id,
                organization_id=organization_id,
                shipper_branch_org_id=scope.shipper_branch_org_id,
                gallery_branch_org_id=scope.gallery_branch_org_id,
                provider_conversation_id=provider_conversation_id,
                provider_unique_name=provider_unique_name,
                status=status,
                last_message_at=None,
                metadata=metadata.model_copy(deep=True),
                created_by=created_by,
                conversation_type=scope.conversation_type,
                initiator_shipper_org_id=initiator_shipper_org_id,
                created_at=now,
                updated_at=now,
            )
            self._threads[thread.thread_id] = thread
            self._thread_by_scope[scope_key] = thread.thread_id
            if provider_unique_name:
                self._thread_by_unique_name[provider_unique_name] = thread.thread_id
            return thread

    def update_thread_scope(
        self,
        thread_id: str,
        *,
        shipper_branch_org_id: str | None = UNSET,
        gallery_branch_org_id: str | None = UNSET,
        metadata: ThreadMetadataDocument = UNSET,
    ) -> ThreadRecord:
        with self._lock:
            current = self._threads.get(thread_id)
            if current is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            changes: dict[str, Any] = {}
            if shipper_branch_org_id is not UNSET:
                changes["shipper_branch_org_id"] = shipper_branch_org_id
            if gallery_branch_org_id is not UNSET:
                changes["gallery_branch_org_id"] = gallery_branch_org_id
            if metadata is not UNSET:
                changes["metadata"] = metadata.model_copy(deep=True)
            if not changes:
                return current
            updated = replace(current, **changes, updated_at=_now_utc())
            old_key = current.scope.scope_key()
            new_key = updated.scope.scope_key()
            if new_key != old_key:
                if new_key in self._thread_by_scope:
                    raise ThreadScopeConflictError(f"thread already exists for scope {new_key}")
                del self._thread_by_scope[old_key]
                self._thread_by_scope[new_key] = thread_id
            self._threads[thread_id] = updated
            return updated

    def update_thread_last_message_at(self, thread_id: str, message_at: datetime) -> bool:
        with self._lock:
            current = self._threads.get(thread_id)
            if current is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            if current.last_message_at is not None and current.last_message_at >= message_at:
                return False
            self._threads[thread_id] = replace(current, last_message_at=message_at, updated_at=_now_utc())
            return True

    def ensure_thread_shipper(self, thread_id: str, shipper_branch_org_id: str, role: str) -> ThreadShipperRecord:
        key = (thread_id, shipper_branch_org_id)
        with self._lock:
            existing = self._shippers.get(key)
            if existing is not None:
                if existing.role != role:
                    existing = replace(existing, role=role)
                    self._shippers[key] = existing
                return existing
            record = ThreadShipperRecord(
                thread_shipper_id=f"tshipper_{next(self._shipper_counter):06d}",
                thread_id=thread_id,
                shipper_branch_org_id=shipper_branch_org_id,
                role=role,
                created_at=_now_utc(),
            )
            self._shippers[key] = record
            return record

    def list_thread_shippers(self, thread_id: str) -> list[ThreadShipperRecord]:
        with self._lock:
            return [value for (owner, _), value in self._shippers.items() if owner == thread_id]

    def upsert_participant(
        self,
        *,
        thread_id: str,
        user_id: str,
        organization_id: str | None,
        role: str,
        provider_identity: str,
        provider_role_ref: str,
    ) -> ParticipantRecord:
        key = (thread_id, user_id)
        now = _now_utc()
        with self._lock:
            existing = self._participants.get(key)
            if existing is None:
                record = ParticipantRecord(
                    participant_id=f"tpart_{next(self._participant_counter):06d}",
                    thread_id=thread_id,
                    user_id=user_id,
                    organization_id=organization_id,
                    role=role,
                    provider_identity=provider_identity,
                    provider_role_ref=provider_role_ref,
                    joined_at=now,
                    left_at=None,
                    last_read_message_index=None,
                    last_read_at=None,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = replace(
                    existing,
                    organization_id=organization_id,
                    role=role,
                    provider_identity=provider_identity,
                    provider_role_ref=provider_role_ref,
                    joined_at=now,
                    left_at=None,
                    updated_at=now,
                )
            self._participants[key] = record
            return record

    def get_participant(self, thread_id: str, user_id: str) -> ParticipantRecord | None:
        with self._lock:
            return self._participants.get((thread_id, user_id))

    def list_participants(self, thread_id: str, *, active_only: bool = False) -> list[ParticipantRecord]:
        with self._lock:
            rows = [value for (owner, _), value in self._participants.items() if owner == thread_id]
        if active_only:
            rows = [row for row in rows if row.is_active]
        return sorted(rows, key=lambda value: value.created_at)

    def update_participant_read_state(
        self,
        thread_id: str,
        provider_identity: str,
        *,
        last_read_message_index: int | None,
        last_read_at: datetime | None,
    ) -> bool:
        changed = False
        with self._lock:
            for key, current in list(self._participants.items()):
                if current.thread_id != thread_id or current.provider_identity != provider_identity:
                    continue
                index, read_at = _advance_read_state(
                    current.last_read_message_index,
                    current.last_read_at,
                    last_read_message_index,
                    last_read_at,
                )
                if index == current.last_read_message_index and read_at == current.last_read_at:
                    continue
                self._participants[key] = replace(
                    current,
                    last_read_message_index=index,
                    last_read_at=read_at,
                    updated_at=_now_utc(),
                )
                changed = True
        return changed

    def mark_participant_left(self, thread_id: str, provider_identity: str, left_at: datetime) -> bool:
        changed = False
        with self._lock:
            for key, current in list(self._participants.items()):
                if current.thread_id != thread_id or current.provider_identity != provider_identity:
                    continue
                if current.left_at is not None:
                    continue
                # A departure stamped before the latest join belongs to an earlier membership.
                if left_at < current.joined_at:
                    continue
                self._participants[key] = replace(current, left_at=left_at, updated_at=_now_utc())
                changed = True
        return changed

    def record_message_audit(self, payload: MessageAuditInput) -> MessageAuditRecord:
        key = (payload.thread_id, payload.message_sid)
        now = _now_utc()
        with self._lock:
            existing = self._audit.get(key)
            record = MessageAuditRecord(
                thread_id=payload.thread_id,
                message_sid=payload.message_sid,
                author_identity=payload.author_identity,
                author_user_id=payload.author_user_id,
                body_preview=payload.body_preview,
                media=payload.media,
                sent_at=payload.sent_at,
                delivery_status=payload.delivery_status,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )
            self._audit[key] = record
            return record

    def list_message_audit(self, thread_id: str) -> list[MessageAuditRecord]:
        with self._lock:
            rows = [value for (owner, _), value in self._audit.items() if owner == thread_id]
        return sorted(rows, key=lambda value: value.sent_at)


class ChatStoreBase(DeclarativeBase):
    pass


class _ThreadRow(ChatStoreBase):
    __tablename__ = "chat_threads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    quote_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    shipment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    shipper_branch_org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gallery_branch_org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(640), nullable=False, unique=True)
    provider_conversation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider_unique_name: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    conversation_type: Mapped[str] = mapped_column(String(32), nullable=False, default="gallery")
    initiator_shipper_org_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ParticipantRow(ChatStoreBase):
    __tablename__ = "chat_thread_participants"
    __table_args__ = (UniqueConstraint("thread_id", "user_id", name="uq_chat_thread_participants_thread_user"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("chat_threads.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_identity: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    provider_role_ref: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_read_message_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ThreadShipperRow(ChatStoreBase):
    __tablename__ = "chat_thread_shippers"
    __table_args__ = (
        UniqueConstraint("thread_id", "shipper_branch_org_id", name="uq_chat_thread_shippers_thread_branch"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("chat_threads.id"), nullable=False, index=True)
    shipper_branch_org_id: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageAuditRow(ChatStoreBase):
    __tablename__ = "chat_message_audit"
    __table_args__ = (UniqueConstraint("thread_id", "message_sid", name="uq_chat_message_audit_thread_message"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    thread_id: Mapped[str] = mapped_column(String(64), ForeignKey("chat_threads.id"), nullable=False, index=True)
    message_sid: Mapped[str] = mapped_column(String(128), nullable=False)
    author_identity: Mapped[str] = mapped_column(String(256), nullable=False)
    author_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    body_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    delivery_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyThreadStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CHAT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ChatStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageAuditRow).delete()
                session.query(_ThreadShipperRow).delete()
                session.query(_ParticipantRow).delete()
                session.query(_ThreadRow).delete()

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.get(_ThreadRow, thread_id)
            return self._thread_record(row) if row is not None else None

    def get_thread_by_quote_id(self, quote_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ThreadRow)
                .where(_ThreadRow.quote_id == quote_id)
                .where(_ThreadRow.conversation_type == "gallery")
                .where(_ThreadRow.shipper_branch_org_id.is_(None))
                .where(_ThreadRow.gallery_branch_org_id.is_(None))
                .order_by(_ThreadRow.created_at.asc())
                .limit(1)
            )
            return self._thread_record(row) if row is not None else None

    def find_thread_by_scope(self, scope: ThreadScope) -> ThreadRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ThreadRow).where(_ThreadRow.scope_key == scope.scope_key()))
            return self._thread_record(row) if row is not None else None

    def get_thread_by_provider_conversation_id(self, conversation_id: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ThreadRow).where(_ThreadRow.provider_conversation_id == conversation_id).limit(1)
            )
            return self._thread_record(row) if row is not None else None

    def get_thread_by_unique_name(self, unique_name: str) -> ThreadRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ThreadRow).where(_ThreadRow.provider_unique_name == unique_name))
            return self._thread_record(row) if row is not None else None

    def create_thread(
        self,
        *,
        scope: ThreadScope,
        organization_id: str,
        provider_conversation_id: str,
        provider_unique_name: str | None,
        metadata: ThreadMetadataDocument,
        created_by: str,
        initiator_shipper_org_id: str | None = None,
        status: str = "active",
    ) -> ThreadRecord:
        now = _now_utc()
        row = _ThreadRow(
            id=str(uuid.uuid4()),
            quote_id=scope.quote_id,
            shipment_id=scope.shipment_id,
            organization_id=organization_id,
            shipper_branch_org_id=scope.shipper_branch_org_id,
            gallery_branch_org_id=scope.gallery_branch_org_id,
            scope_key=scope.scope_key(),
            provider_conversation_id=provider_conversation_id,
            provider_unique_name=provider_unique_name,
            status=status,
            last_message_at=None,
            metadata_json=metadata.model_dump_json(),
            created_by=created_by,
            conversation_type=scope.conversation_type,
            initiator_shipper_org_id=initiator_shipper_org_id,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
                    session.flush()
                    return self._thread_record(row)
        except IntegrityError as exc:
            raise ThreadScopeConflictError(f"thread already exists for scope {row.scope_key}") from exc

    def update_thread_scope(
        self,
        thread_id: str,
        *,
        shipper_branch_org_id: str | None = UNSET,
        gallery_branch_org_id: str | None = UNSET,
        metadata: ThreadMetadataDocument = UNSET,
    ) -> ThreadRecord:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id)
                    if row is None:
                        raise NotFoundError(f"thread not found: {thread_id}")
                    changed = False
                    if shipper_branch_org_id is not UNSET:
                        row.shipper_branch_org_id = shipper_branch_org_id
                        changed = True
                    if gallery_branch_org_id is not UNSET:
                        row.gallery_branch_org_id = gallery_branch_org_id
                        changed = True
                    if metadata is not UNSET:
                        row.metadata_json = metadata.model_dump_json()
                        changed = True
                    if changed:
                        row.scope_key = self._thread_record(row).scope.scope_key()
                        row.updated_at = _now_utc()
                        session.flush()
                    return self._thread_record(row)
        except IntegrityError as exc:
            raise ThreadScopeConflictError(f"scope update collides with another thread: {thread_id}") from exc

    def update_thread_last_message_at(self, thread_id: str, message_at: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_ThreadRow, thread_id, with_for_update=True)
                if row is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                current = _coerce_utc(row.last_message_at)
                if current is not None and current >= message_at:
                    return False
                row.last_message_at = message_at
                row.updated_at = _now_utc()
                return True

    def ensure_thread_shipper(self, thread_id: str, shipper_branch_org_id: str, role: str) -> ThreadShipperRecord:
        for _ in range(_UPSERT_ATTEMPTS):
            try:
                with self._session() as session:
                    with session.begin():
                        row = session.scalar(
                            select(_ThreadShipperRow)
                            .where(_ThreadShipperRow.thread_id == thread_id)
                            .where(_ThreadShipperRow.shipper_branch_org_id == shipper_branch_org_id)
                        )
                        if row is None:
                            row = _ThreadShipperRow(
                                id=str(uuid.uuid4()),
                                thread_id=thread_id,
                                shipper_branch_org_id=shipper_branch_org_id,
                                role=role,
                                created_at=_now_utc(),
                            )
                            session.add(row)
                        else:
                            row.role = role
                        session.flush()
                        return self._shipper_record(row)
            except IntegrityError:
                continue
        raise PersistenceError(f"unable to upsert thread shipper {thread_id}/{shipper_branch_org_id}")

    def list_thread_shippers(self, thread_id: str) -> list[ThreadShipperRecord]:
        with self._session() as session:
            rows = session.scalars(select(_ThreadShipperRow).where(_ThreadShipperRow.thread_id == thread_id)).all()
            return [self._shipper_record(row) for row in rows]

    def upsert_participant(
        self,
        *,
        thread_id: str,
        user_id: str,
        organization_id: str | None,
        role: str,
        provider_identity: str,
        provider_role_ref: str,
    ) -> ParticipantRecord:
        for _ in range(_UPSERT_ATTEMPTS):
            now = _now_utc()
            try:
                with self._session() as session:
                    with session.begin():
                        row = session.scalar(
                            select(_ParticipantRow)
                            .where(_ParticipantRow.thread_id == thread_id)
                            .where(_ParticipantRow.user_id == user_id)
                        )
                        if row is None:
                            row = _ParticipantRow(
                                id=str(uuid.uuid4()),
                                thread_id=thread_id,
                                user_id=user_id,
                                created_at=now,
                                last_read_message_index=None,
                                last_read_at=None,
                            )
                            session.add(row)
                        row.organization_id = organization_id
                        row.role = role
                        row.provider_identity = provider_identity
                        row.provider_role_ref = provider_role_ref
                        row.joined_at = now
                        row.left_at = None
                        row.updated_at = now
                        session.flush()
                        return self._participant_record(row)
            except IntegrityError:
                continue
        raise PersistenceError(f"unable to upsert participant {thread_id}/{user_id}")

    def get_participant(self, thread_id: str, user_id: str) -> ParticipantRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ParticipantRow)
                .where(_ParticipantRow.thread_id == thread_id)
                .where(_ParticipantRow.user_id == user_id)
            )
            return self._participant_record(row) if row is not None else None

    def list_participants(self, thread_id: str, *, active_only: bool = False) -> list[ParticipantRecord]:
        query = select(_ParticipantRow).where(_ParticipantRow.thread_id == thread_id)
        if active_only:
            query = query.where(_ParticipantRow.left_at.is_(None))
        with self._session() as session:
            rows = session.scalars(query.order_by(_ParticipantRow.created_at.asc())).all()
            return [self._participant_record(row) for row in rows]

    def update_participant_read_state(
        self,
        thread_id: str,
        provider_identity: str,
        *,
        last_read_message_index: int | None,
        last_read_at: datetime | None,
    ) -> bool:
        changed = False
        with self._session() as session:
            with session.begin():
                rows = session.scalars(
                    select(_ParticipantRow)
                    .where(_ParticipantRow.thread_id == thread_id)
                    .where(_ParticipantRow.provider_identity == provider_identity)
                    .with_for_update()
                ).all()
                for row in rows:
                    current_at = _coerce_utc(row.last_read_at)
                    index, read_at = _advance_read_state(
                        row.last_read_message_index,
                        current_at,
                        last_read_message_index,
                        last_read_at,
                    )
                    if index == row.last_read_message_index and read_at == current_at:
                        continue
                    row.last_read_message_index = index
                    row.last_read_at = read_at
                    row.updated_at = _now_utc()
                    changed = True
        return changed

    def mark_participant_left(self, thread_id: str, provider_identity: str, left_at: datetime) -> bool:
        changed = False
        with self._session() as session:
            with session.begin():
                rows = session.scalars(
                    select(_ParticipantRow)
                    .where(_ParticipantRow.thread_id == thread_id)
                    .where(_ParticipantRow.provider_identity == provider_identity)
                    .where(_ParticipantRow.left_at.is_(None))
                ).all()
                for row in rows:
                    if left_at < _coerce_utc(row.joined_at):
                        continue
                    row.left_at = left_at
                    row.updated_at = _now_utc()
                    changed = True
        return changed

    def record_message_audit(self, payload: MessageAuditInput) -> MessageAuditRecord:
        media_json = json.dumps(payload.media, sort_keys=True, separators=(",", ":")) if payload.media is not None else None
        for _ in range(_UPSERT_ATTEMPTS):
            now = _now_utc()
            try:
                with self._session() as session:
                    with session.begin():
                        row = session.scalar(
                            select(_MessageAuditRow)
                            .where(_MessageAuditRow.thread_id == payload.thread_id)
                            .where(_MessageAuditRow.message_sid == payload.message_sid)
                        )
                        if row is None:
                            row = _MessageAuditRow(
                                thread_id=payload.thread_id,
                                message_sid=payload.message_sid,
                                created_at=now,
                            )
                            session.add(row)
                        row.author_identity = payload.author_identity
                        row.author_user_id = payload.author_user_id
                        row.body_preview = payload.body_preview
                        row.media_json = media_json
                        row.sent_at = payload.sent_at
                        row.delivery_status = payload.delivery_status
                        row.updated_at = now
                        session.flush()
                        return self._audit_record(row)
            except IntegrityError:
                continue
        raise PersistenceError(f"unable to record message audit {payload.thread_id}/{payload.message_sid}")

    def list_message_audit(self, thread_id: str) -> list[MessageAuditRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageAuditRow)
                .where(_MessageAuditRow.thread_id == thread_id)
                .order_by(_MessageAuditRow.sent_at.asc())
            ).all()
            return [self._audit_record(row) for row in rows]

    @staticmethod
    def _thread_record(row: _ThreadRow) -> ThreadRecord:
        return ThreadRecord(
            thread_id=row.id,
            quote_id=row.quote_id,
            shipment_id=row.shipment_id,
            organization_id=row.organization_id,
            shipper_branch_org_id=row.shipper_branch_org_id,
            gallery_branch_org_id=row.gallery_branch_org_id,
            provider_conversation_id=row.provider_conversation_id,
            provider_unique_name=row.provider_unique_name,
            status=row.status,
            last_message_at=_coerce_utc(row.last_message_at),
            metadata=parse_thread_metadata(
                json.loads(row.metadata_json or "{}"),
                conversation_type=row.conversation_type,  # type: ignore[arg-type]
            ),
            created_by=row.created_by,
            conversation_type=row.conversation_type,  # type: ignore[arg-type]
            initiator_shipper_org_id=row.initiator_shipper_org_id,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _participant_record(row: _ParticipantRow) -> ParticipantRecord:
        return ParticipantRecord(
            participant_id=row.id,
            thread_id=row.thread_id,
            user_id=row.user_id,
            organization_id=row.organization_id,
            role=row.role,
            provider_identity=row.provider_identity,
            provider_role_ref=row.provider_role_ref,
            joined_at=_coerce_utc(row.joined_at),  # type: ignore[arg-type]
            left_at=_coerce_utc(row.left_at),
            last_read_message_index=row.last_read_message_index,
            last_read_at=_coerce_utc(row.last_read_at),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _shipper_record(row: _ThreadShipperRow) -> ThreadShipperRecord:
        return ThreadShipperRecord(
            thread_shipper_id=row.id,
            thread_id=row.thread_id,
            shipper_branch_org_id=row.shipper_branch_org_id,
            role=row.role,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _audit_record(row: _MessageAuditRow) -> MessageAuditRecord:
        return MessageAuditRecord(
            thread_id=row.thread_id,
            message_sid=row.message_sid,
            author_identity=row.author_identity,
            author_user_id=row.author_user_id,
            body_preview=row.body_preview,
            media=json.loads(row.media_json) if row.media_json else None,
            sent_at=_coerce_utc(row.sent_at),  # type: ignore[arg-type]
            delivery_status=row.delivery_status,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )


def create_thread_store(*, backend: str, database_url: str) -> ThreadStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyThreadStore(database_url)
    if normalized == "inmemory":
        return InMemoryThreadStore()
    raise RuntimeError(f"unsupported CHAT_STORE_BACKEND: {backend}")
