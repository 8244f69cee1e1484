from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from quote_chat.errors import AuthorizationError, NotFoundError, ProviderUnavailableError
from quote_chat.models import GalleryThreadMetadata, ShipperPeerThreadMetadata
from quote_chat.orchestrator import build_unique_name
from quote_chat.thread_store import InMemoryThreadStore, ThreadScope

from conftest import build_world


class _StaleLookupStore(InMemoryThreadStore):
    """Answers the next scope lookup as if a concurrent insert had not landed yet."""

    def __init__(self) -> None:
        super().__init__()
        self.stale_next_lookup = False

    def find_thread_by_scope(self, scope):
        if self.stale_next_lookup:
            self.stale_next_lookup = False
            return None
        return super().find_thread_by_scope(scope)


def test_ensure_thread_for_quote_creates_then_returns_existing(world) -> None:
    orchestrator = world.services.orchestrator

    first = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin")
    second = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-viewer")

    assert first.created is True
    assert second.created is False
    assert second.thread.thread_id == first.thread.thread_id
    thread = first.thread
    assert thread.conversation_type == "gallery"
    assert thread.organization_id == "org-gallery"
    assert thread.shipment_id == "S1"
    assert thread.provider_unique_name == "quote::Q1"
    assert thread.created_by == "u-admin"
    assert len(world.provider.calls_named("create_conversation")) == 1


def test_conversation_attributes_carry_quote_and_initiator(world) -> None:
    result = world.services.orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin")

    conversation = world.provider.fetch_conversation(result.thread.provider_conversation_id)
    assert conversation.friendly_name == "Quote One"
    assert conversation.attributes["quoteId"] == "Q1"
    assert conversation.attributes["createdBy"] == "u-admin"
    assert conversation.attributes["conversationType"] == "gallery"


def test_scoped_threads_are_distinct_from_the_unscoped_thread(world) -> None:
    orchestrator = world.services.orchestrator

    unscoped = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread
    gallery_scoped = orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-admin",
        shipper_branch_org_id="org-shipper",
        gallery_branch_org_id="org-gallery",
    ).thread
    peer = orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-ship-admin",
        shipper_branch_org_id="org-shipper",
    ).thread

    assert len({unscoped.thread_id, gallery_scoped.thread_id, peer.thread_id}) == 3
    assert gallery_scoped.conversation_type == "gallery"
    assert gallery_scoped.provider_unique_name.startswith("quote::Q1::scope::")
    assert peer.conversation_type == "shipper_peer"
    assert peer.initiator_shipper_org_id == "org-shipper"
    assert isinstance(peer.metadata, ShipperPeerThreadMetadata)
    assert [(row.shipper_branch_org_id, row.role) for row in world.store.list_thread_shippers(peer.thread_id)] == [
        ("org-shipper", "initiator")
    ]


def test_unique_name_is_deterministic_for_a_scope() -> None:
    scope = ThreadScope("Q1", "S1", "org-shipper", "org-gallery", "gallery")
    name = build_unique_name("Q1", shipment_id="S1", scope=scope)
    assert name == build_unique_name("Q1", shipment_id="S1", scope=scope)
    assert len(name.rsplit("::", 1)[1]) == 24
    unscoped = ThreadScope("Q1", "S1", None, None, "gallery")
    assert build_unique_name("Q1", shipment_id="S1", scope=unscoped) == "quote::Q1"


def test_missing_quote_is_not_found(world) -> None:
    with pytest.raises(NotFoundError):
        world.services.orchestrator.ensure_thread_for_quote(quote_id="Q-missing", initiator_user_id="u-admin")


def test_losing_a_creation_race_returns_the_winner() -> None:
    world = build_world(store=_StaleLookupStore())
    orchestrator = world.services.orchestrator
    winner = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread
    world.store.stale_next_lookup = True

    loser = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-viewer")

    assert loser.created is False
    assert loser.thread.thread_id == winner.thread_id
    assert world.store.get_thread_by_quote_id("Q1").thread_id == winner.thread_id
    assert world.store.find_thread_by_scope(winner.scope).thread_id == winner.thread_id


def test_concurrent_callers_converge_on_one_thread(world) -> None:
    orchestrator = world.services.orchestrator

    def ensure(index: int) -> str:
        return orchestrator.ensure_thread_for_quote(quote_id="Q2", initiator_user_id=f"user-{index}").thread.thread_id

    with ThreadPoolExecutor(max_workers=8) as pool:
        thread_ids = set(pool.map(ensure, range(16)))

    assert len(thread_ids) == 1
    conversation_sid = world.store.get_thread(thread_ids.pop()).provider_conversation_id
    assert world.provider.fetch_conversation("quote::Q2").sid == conversation_sid


def test_ensure_participant_is_idempotent(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread

    first = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer", role_override="client")
    second = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer", role_override="client")

    assert first.identity == second.identity == "client:u-viewer"
    assert first.participant.participant_id == second.participant.participant_id
    assert len(world.store.list_participants(thread.thread_id, active_only=True)) == 1
    assert len(world.provider.calls_named("add_participant")) == 2
    assert world.provider.participant_identities(thread.provider_conversation_id) == {"client:u-viewer"}
    assert first.participant.provider_role_ref == "RL-client"


def test_participant_org_and_role_resolution(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread

    by_default_org = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-ship-admin")
    assert by_default_org.participant.organization_id == "org-shipper"
    assert by_default_org.role == "shipper"
    assert by_default_org.identity == "shipper:u-ship-admin"
    assert by_default_org.participant.provider_role_ref == "RL-shipper"

    explicit = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer", organization_id="org-gallery")
    assert explicit.role == "client"

    world.directory.add_profile("u-no-default", full_name="No Default", default_org_id=None)
    world.directory.add_membership("u-no-default", "org-gallery", role="viewer")
    fallback = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-no-default")
    assert fallback.participant.organization_id == thread.organization_id


def test_participant_must_belong_to_target_org(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread

    with pytest.raises(AuthorizationError):
        orchestrator.ensure_participant_in_thread(thread.thread_id, "u-outsider")
    with pytest.raises(NotFoundError):
        orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer", organization_id="org-missing")
    with pytest.raises(NotFoundError):
        orchestrator.ensure_participant_in_thread("missing-thread", "u-viewer")
    assert world.provider.calls_named("add_participant") == []


def test_participant_summary_is_synced_to_metadata_and_provider(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread

    orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer")
    result = orchestrator.ensure_participant_in_thread(thread.thread_id, "u-ship-member")

    metadata = world.store.get_thread(thread.thread_id).metadata
    assert isinstance(metadata, GalleryThreadMetadata)
    assert [item.id for item in metadata.participants] == ["u-viewer", "u-ship-member"]
    assert metadata.partner_name == "Vic Viewer"
    assert metadata.shipper_company == "Fast Freight"
    # No full name on the profile, so the organization name stands in.
    assert metadata.participants[1].name == "Fast Freight"
    assert result.thread.metadata == metadata

    attributes = world.provider.fetch_conversation(thread.provider_conversation_id).attributes
    assert [item["id"] for item in attributes["participants"]] == ["u-viewer", "u-ship-member"]

    updates_before = len(world.provider.calls_named("update_attributes"))
    orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer")
    assert len(world.provider.calls_named("update_attributes")) == updates_before


def test_provider_failure_on_add_propagates(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread
    world.provider.add_participant = MagicMock(side_effect=ProviderUnavailableError("twilio down"))

    with pytest.raises(ProviderUnavailableError):
        orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer")
    assert world.store.get_participant(thread.thread_id, "u-viewer") is None


def test_remove_participant_marks_left_even_if_provider_fails(world) -> None:
    orchestrator = world.services.orchestrator
    thread = orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread
    orchestrator.ensure_participant_in_thread(thread.thread_id, "u-viewer")
    world.provider.remove_participant = MagicMock(side_effect=RuntimeError("network unreachable"))

    removed = orchestrator.remove_participant(thread, "u-viewer")

    assert removed.left_at is not None
    world.provider.remove_participant.assert_called_once_with(thread.provider_conversation_id, "client:u-viewer")
    with pytest.raises(NotFoundError):
        orchestrator.remove_participant(thread, "u-never-added")


def test_default_participants_are_seeded_on_creation() -> None:
    world = build_world(chat_seed_default_participants=True)
    orchestrator = world.services.orchestrator

    thread = orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-admin",
        shipper_branch_org_id="org-shipper",
        gallery_branch_org_id="org-gallery",
    ).thread

    participants = {row.user_id: row.role for row in world.store.list_participants(thread.thread_id)}
    assert participants == {
        "u-submitter": "client",
        "u-viewer": "client",
        "u-ship-admin": "shipper",
        "u-ship-member": "shipper",
    }

    again = orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-viewer",
        shipper_branch_org_id="org-shipper",
        gallery_branch_org_id="org-gallery",
    )
    assert again.created is False
    assert "u-admin" not in {row.user_id for row in world.store.list_participants(thread.thread_id)}


def test_add_thread_shipper_invites_branch(world) -> None:
    orchestrator = world.services.orchestrator
    peer = orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-ship-admin",
        shipper_branch_org_id="org-shipper",
    ).thread

    updated = orchestrator.add_thread_shipper(peer.thread_id, "org-shipper-2")
    orchestrator.add_thread_shipper(peer.thread_id, "org-shipper-2")

    assert updated.metadata.shipper_branch_org_ids == ["org-shipper", "org-shipper-2"]
    roles = {row.shipper_branch_org_id: row.role for row in world.store.list_thread_shippers(peer.thread_id)}
    assert roles == {"org-shipper": "initiator", "org-shipper-2": "invited"}
