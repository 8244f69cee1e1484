from __future__ import annotations

import pytest

from quote_chat.errors import AuthorizationError, NotFoundError


def _gallery_thread(world):
    return world.services.orchestrator.ensure_thread_for_quote(quote_id="Q1", initiator_user_id="u-admin").thread


def _peer_thread(world):
    return world.services.orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-ship-admin",
        shipper_branch_org_id="org-shipper",
    ).thread


def test_elevated_member_of_thread_org_can_manage(world) -> None:
    thread = _gallery_thread(world)
    guard = world.services.guard

    assert guard.assert_can_manage_participants(thread.thread_id, "u-admin").thread_id == thread.thread_id
    assert guard.assert_can_manage_participants(thread.thread_id, "u-submitter").thread_id == thread.thread_id


@pytest.mark.parametrize("user_id", ["u-viewer", "u-ship-admin", "u-outsider"])
def test_other_users_cannot_manage_gallery_thread(world, user_id: str) -> None:
    thread = _gallery_thread(world)

    with pytest.raises(AuthorizationError, match="Insufficient permissions"):
        world.services.guard.assert_can_manage_participants(thread.thread_id, user_id)


def test_unknown_thread_is_not_found(world) -> None:
    with pytest.raises(NotFoundError, match="Thread not found"):
        world.services.guard.assert_can_manage_participants("thread_missing", "u-admin")


def test_initiating_shipper_admin_can_manage_peer_thread(world) -> None:
    thread = _peer_thread(world)
    guard = world.services.guard

    guard.assert_can_manage_participants(thread.thread_id, "u-ship-admin")
    # Elevated members of the owning gallery keep control too.
    guard.assert_can_manage_participants(thread.thread_id, "u-admin")
    with pytest.raises(AuthorizationError):
        guard.assert_can_manage_participants(thread.thread_id, "u-ship-member")


def test_invited_shipper_branch_admin_can_manage_peer_thread(world) -> None:
    thread = _peer_thread(world)
    guard = world.services.guard

    with pytest.raises(AuthorizationError):
        guard.assert_can_manage_participants(thread.thread_id, "u-ship2-admin")

    world.services.orchestrator.add_thread_shipper(thread.thread_id, "org-shipper-2")

    guard.assert_can_manage_participants(thread.thread_id, "u-ship2-admin")
    assert guard.scoped_shipper_org_ids(world.store.get_thread(thread.thread_id)) == {"org-shipper", "org-shipper-2"}
    with pytest.raises(AuthorizationError):
        guard.assert_can_manage_participants(thread.thread_id, "u-ship3-admin")


def test_shipper_admin_cannot_manage_gallery_thread_scoped_to_their_branch(world) -> None:
    thread = world.services.orchestrator.ensure_thread_for_quote(
        quote_id="Q1",
        initiator_user_id="u-admin",
        shipper_branch_org_id="org-shipper",
        gallery_branch_org_id="org-gallery",
    ).thread

    with pytest.raises(AuthorizationError):
        world.services.guard.assert_can_manage_participants(thread.thread_id, "u-ship-admin")


def test_open_quote_requires_membership_in_a_quote_org(world) -> None:
    guard = world.services.guard

    guard.assert_can_open_quote("Q1", "u-viewer")
    guard.assert_can_open_quote("Q1", "u-ship-member", shipper_branch_org_id="org-shipper")
    with pytest.raises(AuthorizationError):
        guard.assert_can_open_quote("Q1", "u-ship-member")
    with pytest.raises(AuthorizationError):
        guard.assert_can_open_quote("Q1", "u-outsider", shipper_branch_org_id="org-shipper")
    with pytest.raises(NotFoundError):
        guard.assert_can_open_quote("Q-missing", "u-viewer")


def test_join_thread_accepts_participants_and_org_members(world) -> None:
    thread = _gallery_thread(world)
    guard = world.services.guard

    guard.assert_can_join_thread(thread, "u-viewer")
    with pytest.raises(AuthorizationError):
        guard.assert_can_join_thread(thread, "u-ship-admin")

    world.services.orchestrator.ensure_participant_in_thread(thread.thread_id, "u-ship-admin")
    guard.assert_can_join_thread(thread, "u-ship-admin")

    world.services.orchestrator.remove_participant(thread, "u-ship-admin")
    with pytest.raises(AuthorizationError):
        guard.assert_can_join_thread(thread, "u-ship-admin")
