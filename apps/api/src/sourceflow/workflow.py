"""Source lifecycle state machine.

Every component that changes `sources.workflow_status` goes through
`WorkflowStateMachine.transition`; nothing else writes the column.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from sourceflow.errors import InvalidTransition
from sourceflow.events import EventBus, SourceStatusChanged, publish_after_commit
from sourceflow.models import SourceRecord
from sourceflow.scheduling import Clock, SystemClock
from sourceflow.types import SourceType, WorkflowStatus

logger = logging.getLogger(__name__)

S = WorkflowStatus

_PIPELINE_EDGES: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    S.CREATED: frozenset({S.CRAWLING}),
    S.CRAWLING: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset({S.TRAINING}),
    S.TRAINING: frozenset({S.TRAINED}),
    S.TRAINED: frozenset(),
    S.ERROR: frozenset(),
    S.PENDING_REMOVAL: frozenset({S.REMOVED}),
    S.REMOVED: frozenset(),
}

# Only reachable through a user recrawl/retrain request.
_EXPLICIT_EDGES: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    S.COMPLETED: frozenset({S.CRAWLING}),
    S.TRAINED: frozenset({S.CRAWLING, S.TRAINING}),
    S.ERROR: frozenset({S.CRAWLING, S.TRAINING}),
}

_ROLLBACK_TARGETS = frozenset({S.COMPLETED, S.TRAINED})


def allowed_targets(
    current: WorkflowStatus,
    *,
    source_type: SourceType = SourceType.WEBSITE,
    explicit: bool = False,
) -> frozenset[WorkflowStatus]:
    targets = set(_PIPELINE_EDGES[current])
    if current is not S.REMOVED:
        targets.add(S.PENDING_REMOVAL)
    if current not in (S.PENDING_REMOVAL, S.REMOVED):
        targets.add(S.ERROR)
    if current is S.CREATED and source_type is not SourceType.WEBSITE:
        targets.add(S.COMPLETED)
    if explicit:
        targets |= _EXPLICIT_EDGES.get(current, frozenset())
    targets.discard(current)
    return frozenset(targets)


def is_allowed(
    current: WorkflowStatus,
    target: WorkflowStatus,
    *,
    source_type: SourceType = SourceType.WEBSITE,
    explicit: bool = False,
) -> bool:
    return target in allowed_targets(current, source_type=source_type, explicit=explicit)


class WorkflowStateMachine:
    def __init__(self, bus: EventBus, clock: Clock | None = None) -> None:
        self._bus = bus
        self._clock = clock or SystemClock()

    def transition(
        self,
        session: Session,
        source: SourceRecord,
        target: WorkflowStatus,
        *,
        explicit: bool = False,
    ) -> SourceRecord:
        """Move `source` to `target` or raise `InvalidTransition`.

        The write is conditional on the status the caller observed. When a
        concurrent writer got there first the source is re-read and the edge
        re-validated against the fresh status, once.
        """
        session.flush()
        for _ in range(2):
            current = WorkflowStatus(source.workflow_status)
            self._check(source, current, target, explicit=explicit)

            result = session.execute(
                update(SourceRecord)
                .where(SourceRecord.id == source.id)
                .where(SourceRecord.workflow_status == current.value)
                .values(
                    workflow_status=target.value,
                    previous_status=current.value,
                    updated_at=self._clock.now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                session.refresh(source)
                logger.info(
                    "source transition source_id=%s %s -> %s",
                    source.id,
                    current.value,
                    target.value,
                )
                publish_after_commit(
                    session,
                    self._bus,
                    SourceStatusChanged(
                        source_id=source.id,
                        previous_status=current.value,
                        workflow_status=target.value,
                    ),
                )
                return source

            session.refresh(source)

        raise InvalidTransition(source.id, source.workflow_status, target.value)

    def rollback(self, session: Session, source: SourceRecord) -> SourceRecord:
        """Restore the status held before a failed recrawl."""
        current = WorkflowStatus(source.workflow_status)
        previous = WorkflowStatus(source.previous_status) if source.previous_status else None
        if (
            previous is None
            or previous not in _ROLLBACK_TARGETS
            or current not in (S.CRAWLING, S.ERROR)
            or source.pending_deletion
        ):
            raise InvalidTransition(source.id, current.value, previous.value if previous else "None")

        session.flush()
        result = session.execute(
            update(SourceRecord)
            .where(SourceRecord.id == source.id)
            .where(SourceRecord.workflow_status == current.value)
            .values(
                workflow_status=previous.value,
                previous_status=current.value,
                updated_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        session.refresh(source)
        if result.rowcount != 1:
            raise InvalidTransition(source.id, source.workflow_status, previous.value)

        logger.info("source rollback source_id=%s %s -> %s", source.id, current.value, previous.value)
        publish_after_commit(
            session,
            self._bus,
            SourceStatusChanged(
                source_id=source.id,
                previous_status=current.value,
                workflow_status=previous.value,
            ),
        )
        return source

    def _check(
        self,
        source: SourceRecord,
        current: WorkflowStatus,
        target: WorkflowStatus,
        *,
        explicit: bool,
    ) -> None:
        if source.pending_deletion and target not in (S.PENDING_REMOVAL, S.REMOVED):
            raise InvalidTransition(source.id, current.value, target.value)
        if not is_allowed(
            current,
            target,
            source_type=SourceType(source.source_type),
            explicit=explicit,
        ):
            raise InvalidTransition(source.id, current.value, target.value)
