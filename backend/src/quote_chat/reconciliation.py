from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .directory import Directory
from .errors import ChatError, NotFoundError, ValidationError
from .orchestrator import ThreadOrchestrator
from .thread_store import ThreadRecord, ThreadStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrollmentTarget:
    user_id: str
    organization_id: str | None


@dataclass(frozen=True)
class EnrollmentOutcome:
    user_id: str
    organization_id: str | None
    ok: bool
    identity: str | None = None
    newly_active: bool = False
    error: str | None = None


@dataclass
class ReconciliationReport:
    thread_id: str
    outcomes: list[EnrollmentOutcome] = field(default_factory=list)

    @property
    def ensured(self) -> list[EnrollmentOutcome]:
        return [item for item in self.outcomes if item.ok]

    @property
    def failed(self) -> list[EnrollmentOutcome]:
        return [item for item in self.outcomes if not item.ok]

    @property
    def newly_active_count(self) -> int:
        return sum(1 for item in self.outcomes if item.newly_active)


class ReconciliationTool:
    """Operator batch that enrolls organization members and explicit users into a thread."""

    def __init__(self, *, store: ThreadStore, directory: Directory, orchestrator: ThreadOrchestrator) -> None:
        self._store = store
        self._directory = directory
        self._orchestrator = orchestrator

    def resolve_thread(
        self,
        *,
        thread_id: str | None = None,
        quote_id: str | None = None,
        initiator_user_id: str | None = None,
    ) -> ThreadRecord:
        if thread_id:
            thread = self._store.get_thread(thread_id)
            if thread is None:
                raise NotFoundError(f"Thread not found: {thread_id}")
            return thread
        if quote_id and initiator_user_id:
            return self._orchestrator.ensure_thread_for_quote(
                quote_id=quote_id,
                initiator_user_id=initiator_user_id,
            ).thread
        raise ValidationError("a thread id, or a quote id together with an initiator, is required")

    def collect_targets(self, *, organization_ids: Iterable[str], user_ids: Iterable[str]) -> list[EnrollmentTarget]:
        targets: list[EnrollmentTarget] = []
        positions: dict[str, int] = {}
        for user_id in user_ids:
            if user_id and user_id not in positions:
                positions[user_id] = len(targets)
                targets.append(EnrollmentTarget(user_id=user_id, organization_id=None))
        for organization_id in organization_ids:
            if not organization_id:
                continue
            for membership in self._directory.list_members(organization_id):
                position = positions.get(membership.user_id)
                if position is None:
                    positions[membership.user_id] = len(targets)
                    targets.append(EnrollmentTarget(user_id=membership.user_id, organization_id=organization_id))
                elif targets[position].organization_id is None:
                    # An explicit user who belongs to a listed org is enrolled under that org.
                    targets[position] = EnrollmentTarget(user_id=membership.user_id, organization_id=organization_id)
        return targets

    def reconcile(
        self,
        *,
        thread_id: str | None = None,
        quote_id: str | None = None,
        initiator_user_id: str | None = None,
        organization_ids: Iterable[str] = (),
        user_ids: Iterable[str] = (),
    ) -> ReconciliationReport:
        thread = self.resolve_thread(thread_id=thread_id, quote_id=quote_id, initiator_user_id=initiator_user_id)
        report = ReconciliationReport(thread_id=thread.thread_id)

        for target in self.collect_targets(organization_ids=organization_ids, user_ids=user_ids):
            before = self._store.get_participant(thread.thread_id, target.user_id)
            try:
                result = self._orchestrator.ensure_participant_in_thread(
                    thread.thread_id,
                    target.user_id,
                    organization_id=target.organization_id,
                )
            except ChatError as exc:
                logger.warning("reconcile: failed to enroll %s in thread %s: %s", target.user_id, thread.thread_id, exc.message)
                report.outcomes.append(
                    EnrollmentOutcome(
                        user_id=target.user_id,
                        organization_id=target.organization_id,
                        ok=False,
                        error=exc.message,
                    )
                )
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("reconcile: unexpected failure enrolling %s in thread %s", target.user_id, thread.thread_id)
                report.outcomes.append(
                    EnrollmentOutcome(
                        user_id=target.user_id,
                        organization_id=target.organization_id,
                        ok=False,
                        error=str(exc),
                    )
                )
                continue

            report.outcomes.append(
                EnrollmentOutcome(
                    user_id=target.user_id,
                    organization_id=result.participant.organization_id,
                    ok=True,
                    identity=result.identity,
                    newly_active=before is None or not before.is_active,
                )
            )

        logger.info(
            "reconcile: thread %s ensured=%d failed=%d newly_active=%d",
            thread.thread_id,
            len(report.ensured),
            len(report.failed),
            report.newly_active_count,
        )
        return report
