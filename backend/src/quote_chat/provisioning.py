from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .directory import Directory
from .errors import AuthorizationError
from .orchestrator import ThreadOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionOutcome:
    processed_organizations: int
    ensured_threads: int
    ensured_participants: int


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def provision_user_conversations(
    *,
    orchestrator: ThreadOrchestrator,
    directory: Directory,
    user_id: str,
    organization_ids: Iterable[str] | None = None,
) -> ProvisionOutcome:
    """Ensure the user sits in the unscoped thread of every quote their organizations own."""
    member_org_ids = _unique(membership.org_id for membership in directory.list_memberships_for_user(user_id))
    requested = _unique(organization_ids or [])
    if requested:
        outside = [org_id for org_id in requested if org_id not in member_org_ids]
        if outside:
            raise AuthorizationError(f"User is not a member of organization {outside[0]}")
        target_org_ids = requested
    else:
        target_org_ids = member_org_ids

    ensured_threads = 0
    ensured_participants = 0
    for organization_id in target_org_ids:
        for quote_id in directory.list_quote_ids_for_organization(organization_id):
            result = orchestrator.ensure_thread_for_quote(quote_id=quote_id, initiator_user_id=user_id)
            ensured_threads += 1
            orchestrator.ensure_participant_in_thread(result.thread.thread_id, user_id, organization_id=organization_id)
            ensured_participants += 1

    logger.info(
        "provisioned user %s across %d organizations (%d threads)",
        user_id,
        len(target_org_ids),
        ensured_threads,
    )
    return ProvisionOutcome(
        processed_organizations=len(target_org_ids),
        ensured_threads=ensured_threads,
        ensured_participants=ensured_participants,
    )
