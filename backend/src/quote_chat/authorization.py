from __future__ import annotations

import logging

from .directory import Directory
from .errors import AuthorizationError, NotFoundError
from .thread_store import ThreadRecord, ThreadStore

logger = logging.getLogger(__name__)


class AuthorizationGuard:
    """Decides who may add or remove participants on a thread."""

    def __init__(self, *, store: ThreadStore, directory: Directory) -> None:
        self._store = store
        self._directory = directory

    def scoped_shipper_org_ids(self, thread: ThreadRecord) -> set[str]:
        org_ids = {row.shipper_branch_org_id for row in self._store.list_thread_shippers(thread.thread_id)}
        if thread.shipper_branch_org_id:
            org_ids.add(thread.shipper_branch_org_id)
        if thread.initiator_shipper_org_id:
            org_ids.add(thread.initiator_shipper_org_id)
        return org_ids

    def assert_can_manage_participants(self, thread_id: str, requesting_user_id: str) -> ThreadRecord:
        thread = self._store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")

        membership = self._directory.get_membership(requesting_user_id, thread.organization_id)
        if membership is not None and membership.is_elevated:
            return thread

        if thread.conversation_type == "shipper_peer":
            # Any co-scoped shipper branch may manage the thread, not only the initiator.
            for org_id in sorted(self.scoped_shipper_org_ids(thread)):
                branch_membership = self._directory.get_membership(requesting_user_id, org_id)
                if branch_membership is not None and branch_membership.is_elevated:
                    return thread

        logger.info("user %s denied participant management on thread %s", requesting_user_id, thread_id)
        raise AuthorizationError("Insufficient permissions to manage participants")

    def assert_can_open_quote(
        self,
        quote_id: str,
        user_id: str,
        *,
        shipper_branch_org_id: str | None = None,
        gallery_branch_org_id: str | None = None,
    ) -> None:
        quote = self._directory.get_quote_context(quote_id)
        if quote is None:
            raise NotFoundError("Quote not found")
        candidate_org_ids = [quote.owner_org_id, shipper_branch_org_id, gallery_branch_org_id]
        if any(org_id and self._directory.get_membership(user_id, org_id) for org_id in candidate_org_ids):
            return
        raise AuthorizationError("Not a member of any organization on this quote")

    def assert_can_join_thread(self, thread: ThreadRecord, user_id: str) -> None:
        participant = self._store.get_participant(thread.thread_id, user_id)
        if participant is not None and participant.is_active:
            return
        candidate_org_ids = {thread.organization_id, thread.gallery_branch_org_id} | self.scoped_shipper_org_ids(thread)
        if any(org_id and self._directory.get_membership(user_id, org_id) for org_id in candidate_org_ids):
            return
        raise AuthorizationError("Not a member of any organization on this thread")
