from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .config import Settings
from .directory import Directory, OrganizationRecord, ProfileRecord, QuoteContext
from .errors import (
    AuthorizationError,
    ChatError,
    NotFoundError,
    PersistenceError,
    ProviderConflictError,
    ProviderUnavailableError,
    ThreadScopeConflictError,
    ValidationError,
)
from .identity import encode_identity
from .models import (
    ConversationType,
    GalleryThreadMetadata,
    ParticipantRole,
    ParticipantSummary,
    ShipperPeerThreadMetadata,
    metadata_to_attributes,
)
from .provider_client import ConversationProviderClient, ProviderConversation
from .thread_store import ParticipantRecord, ThreadMetadataDocument, ThreadRecord, ThreadScope, ThreadStore

logger = logging.getLogger(__name__)

_CREATE_ATTEMPTS = 3


@dataclass(frozen=True)
class EnsureThreadResult:
    thread: ThreadRecord
    created: bool


@dataclass(frozen=True)
class EnsureParticipantResult:
    thread: ThreadRecord
    participant: ParticipantRecord
    identity: str
    role: ParticipantRole


def conversation_type_for(shipper_branch_org_id: str | None, gallery_branch_org_id: str | None) -> ConversationType:
    if shipper_branch_org_id and not gallery_branch_org_id:
        return "shipper_peer"
    return "gallery"


def build_unique_name(quote_id: str, *, shipment_id: str | None, scope: ThreadScope) -> str:
    if scope.is_unscoped:
        return f"quote::{quote_id}"
    scope_json = json.dumps(
        {
            "shipmentId": shipment_id,
            "shipperBranchOrgId": scope.shipper_branch_org_id,
            "galleryBranchOrgId": scope.gallery_branch_org_id,
        },
        separators=(",", ":"),
    )
    digest = hashlib.sha256(scope_json.encode("utf-8")).hexdigest()[:24]
    return f"quote::{quote_id}::scope::{digest}"


def participant_role_for(organization: OrganizationRecord) -> ParticipantRole:
    return "shipper" if organization.type == "partner" else "client"


def display_name_for(profile: ProfileRecord | None, organization: OrganizationRecord, role: ParticipantRole) -> str:
    full_name = (profile.full_name or "").strip() if profile is not None else ""
    if full_name:
        return full_name
    if organization.name:
        return organization.name
    return "Logistics Partner Team" if role == "shipper" else "Gallery Team"


class ThreadOrchestrator:
    """Keeps local thread and participant rows in step with the provider."""

    def __init__(
        self,
        *,
        store: ThreadStore,
        directory: Directory,
        provider: ConversationProviderClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._directory = directory
        self._provider = provider
        self._settings = settings

    def ensure_thread_for_quote(
        self,
        *,
        quote_id: str,
        initiator_user_id: str,
        shipper_branch_org_id: str | None = None,
        gallery_branch_org_id: str | None = None,
    ) -> EnsureThreadResult:
        scope = ThreadScope(
            quote_id=quote_id,
            shipment_id=None,
            shipper_branch_org_id=shipper_branch_org_id,
            gallery_branch_org_id=gallery_branch_org_id,
            conversation_type=conversation_type_for(shipper_branch_org_id, gallery_branch_org_id),
        )
        existing = self._store.find_thread_by_scope(scope)
        if existing is not None:
            return EnsureThreadResult(thread=existing, created=False)

        quote = self._directory.get_quote_context(quote_id)
        if quote is None:
            raise NotFoundError("Quote not found")
        scope = replace(scope, shipment_id=quote.shipment_id)

        unique_name = build_unique_name(quote_id, shipment_id=quote.shipment_id, scope=scope)
        metadata = self._initial_metadata(quote, scope, initiator_user_id)
        conversation = self._create_or_fetch_conversation(
            unique_name,
            friendly_name=quote.title or f"Quote {quote_id}",
            metadata=metadata,
        )

        initiator_shipper_org_id = scope.shipper_branch_org_id if scope.conversation_type == "shipper_peer" else None
        for _ in range(_CREATE_ATTEMPTS):
            try:
                thread = self._store.create_thread(
                    scope=scope,
                    organization_id=quote.owner_org_id,
                    provider_conversation_id=conversation.sid,
                    provider_unique_name=unique_name,
                    metadata=metadata,
                    created_by=initiator_user_id,
                    initiator_shipper_org_id=initiator_shipper_org_id,
                )
            except ThreadScopeConflictError:
                winner = self._store.find_thread_by_scope(scope) or self._store.get_thread_by_unique_name(unique_name)
                if winner is not None:
                    logger.info("thread for %s created concurrently; using %s", unique_name, winner.thread_id)
                    return EnsureThreadResult(thread=winner, created=False)
                continue

            logger.info("created thread %s for quote %s (%s)", thread.thread_id, quote_id, scope.conversation_type)
            if initiator_shipper_org_id:
                self._store.ensure_thread_shipper(thread.thread_id, initiator_shipper_org_id, "initiator")
            if self._settings.chat_seed_default_participants:
                self._seed_default_participants(thread, quote, initiator_user_id)
            return EnsureThreadResult(thread=self._store.get_thread(thread.thread_id) or thread, created=True)

        raise PersistenceError(f"unable to create or load thread for {unique_name}")

    def add_thread_shipper(self, thread_id: str, shipper_branch_org_id: str) -> ThreadRecord:
        thread = self._store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")
        if thread.conversation_type != "shipper_peer":
            raise ValidationError("Shipper branches can only be invited to shipper peer threads")
        self._store.ensure_thread_shipper(
            thread_id,
            shipper_branch_org_id,
            "initiator" if shipper_branch_org_id == thread.initiator_shipper_org_id else "invited",
        )
        metadata = thread.metadata.model_copy(deep=True)
        if isinstance(metadata, ShipperPeerThreadMetadata) and shipper_branch_org_id not in metadata.shipper_branch_org_ids:
            metadata.shipper_branch_org_ids.append(shipper_branch_org_id)
            thread = self._store.update_thread_scope(thread_id, metadata=metadata)
            self._push_attributes(thread)
        return thread

    def ensure_participant_in_thread(
        self,
        thread_id: str,
        target_user_id: str,
        *,
        organization_id: str | None = None,
        role_override: ParticipantRole | None = None,
    ) -> EnsureParticipantResult:
        thread = self._store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")

        profile = self._directory.get_profile(target_user_id)
        target_org_id = organization_id or (profile.default_org_id if profile is not None else None) or thread.organization_id
        organization = self._directory.get_organization(target_org_id)
        if organization is None:
            raise NotFoundError("Target organization not found")
        if self._directory.get_membership(target_user_id, target_org_id) is None:
            raise AuthorizationError("User is not a member of the target organization")

        role = role_override or participant_role_for(organization)
        identity = encode_identity(role, target_user_id)
        role_ref = self._settings.role_ref_for(role)

        self._provider.add_participant(thread.provider_conversation_id, identity, role_ref=role_ref or None)
        participant = self._store.upsert_participant(
            thread_id=thread.thread_id,
            user_id=target_user_id,
            organization_id=target_org_id,
            role=role,
            provider_identity=identity,
            provider_role_ref=role_ref,
        )

        summary = ParticipantSummary(
            id=target_user_id,
            identity=identity,
            role=role,
            name=display_name_for(profile, organization, role),
            organization_id=organization.org_id,
            organization_name=organization.name or "",
        )
        thread = self._sync_participant_summary(thread, summary)
        return EnsureParticipantResult(thread=thread, participant=participant, identity=identity, role=role)

    def remove_participant(self, thread: ThreadRecord, target_user_id: str) -> ParticipantRecord:
        participant = self._store.get_participant(thread.thread_id, target_user_id)
        if participant is None:
            raise NotFoundError("Participant not found in thread")

        self._store.mark_participant_left(thread.thread_id, participant.provider_identity, datetime.now(timezone.utc))
        try:
            self._provider.remove_participant(thread.provider_conversation_id, participant.provider_identity)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "provider removal of %s from thread %s failed: %s",
                participant.provider_identity,
                thread.thread_id,
                exc,
            )
        return self._store.get_participant(thread.thread_id, target_user_id) or participant

    def _initial_metadata(self, quote: QuoteContext, scope: ThreadScope, initiator_user_id: str) -> ThreadMetadataDocument:
        common = {
            "quote_id": quote.quote_id,
            "quote_title": quote.title,
            "organization_id": quote.owner_org_id,
            "created_by": initiator_user_id,
            "shipment_id": scope.shipment_id,
            "shipper_branch_org_id": scope.shipper_branch_org_id,
            "gallery_branch_org_id": scope.gallery_branch_org_id,
        }
        if scope.conversation_type == "shipper_peer":
            return ShipperPeerThreadMetadata(
                **common,
                initiator_shipper_org_id=scope.shipper_branch_org_id,
                shipper_branch_org_ids=[scope.shipper_branch_org_id] if scope.shipper_branch_org_id else [],
            )
        return GalleryThreadMetadata(**common)

    def _create_or_fetch_conversation(
        self,
        unique_name: str,
        *,
        friendly_name: str,
        metadata: ThreadMetadataDocument,
    ) -> ProviderConversation:
        try:
            return self._provider.create_conversation(
                unique_name,
                friendly_name=friendly_name,
                attributes=metadata_to_attributes(metadata),
            )
        except ProviderConflictError:
            fetched = self._provider.fetch_conversation(unique_name)
            if fetched is None:
                raise ProviderUnavailableError(f"conversation {unique_name} reported as existing but not found")
            return fetched

    def _seed_default_participants(self, thread: ThreadRecord, quote: QuoteContext, initiator_user_id: str) -> None:
        def ensure_member(user_id: str | None, organization_id: str | None, role: ParticipantRole) -> None:
            if not user_id or user_id == initiator_user_id:
                return
            try:
                self.ensure_participant_in_thread(
                    thread.thread_id,
                    user_id,
                    organization_id=organization_id,
                    role_override=role,
                )
            except ChatError as exc:
                logger.warning(
                    "unable to seed participant %s (%s) into thread %s: %s",
                    user_id,
                    role,
                    thread.thread_id,
                    exc.message,
                )

        gallery_org_id = thread.gallery_branch_org_id or quote.owner_org_id
        shipper_org_id = thread.shipper_branch_org_id

        if thread.conversation_type == "gallery":
            ensure_member(quote.submitted_by, gallery_org_id, "client")
            for member in self._directory.list_members(gallery_org_id):
                ensure_member(member.user_id, gallery_org_id, "client")
        if shipper_org_id:
            for member in self._directory.list_members(shipper_org_id):
                ensure_member(member.user_id, shipper_org_id, "shipper")

    def _sync_participant_summary(self, thread: ThreadRecord, summary: ParticipantSummary) -> ThreadRecord:
        current = self._store.get_thread(thread.thread_id) or thread
        metadata = current.metadata.model_copy(deep=True)
        before = metadata.model_dump_json()
        metadata.upsert_participant(summary)
        if metadata.model_dump_json() == before:
            return current
        try:
            updated = self._store.update_thread_scope(current.thread_id, metadata=metadata)
        except ChatError as exc:
            logger.warning("failed to persist participant summary on thread %s: %s", current.thread_id, exc.message)
            return current
        self._push_attributes(updated)
        return updated

    def _push_attributes(self, thread: ThreadRecord) -> None:
        try:
            self._provider.update_attributes(thread.provider_conversation_id, metadata_to_attributes(thread.metadata))
        except ChatError as exc:
            logger.warning("failed to update conversation attributes for thread %s: %s", thread.thread_id, exc.message)
