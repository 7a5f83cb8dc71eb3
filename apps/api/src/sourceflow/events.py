from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Lock
from typing import Callable, Union

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceChanged:
    source_id: str
    workflow_status: str
    created: bool = False


@dataclass(frozen=True)
class SourceStatusChanged:
    source_id: str
    previous_status: str
    workflow_status: str


@dataclass(frozen=True)
class PageChanged:
    page_id: str
    parent_source_id: str
    status: str
    created: bool = False


@dataclass(frozen=True)
class JobFinished:
    job_id: str
    job_type: str
    target_id: str
    status: str
    source_id: str | None = None


Event = Union[SourceChanged, SourceStatusChanged, PageChanged, JobFinished]
Subscriber = Callable[[Event], None]


def event_source_id(event: Event) -> str | None:
    if isinstance(event, PageChanged):
        return event.parent_source_id
    if isinstance(event, JobFinished):
        return event.source_id
    return event.source_id


class EventBus:
    """In-process change-notification channel.

    Events are published after the write that caused them has committed.
    A subscriber registered with `source_id` only sees events for that
    source; `event_types` narrows delivery further. Subscriber errors are
    logged and never reach the publisher.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: list[tuple[Subscriber, str | None, tuple[type, ...] | None]] = []

    def subscribe(
        self,
        callback: Subscriber,
        *,
        source_id: str | None = None,
        event_types: tuple[type, ...] | None = None,
    ) -> Callable[[], None]:
        entry = (callback, source_id, event_types)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        target_source = event_source_id(event)
        for callback, source_id, event_types in subscribers:
            if source_id is not None and source_id != target_source:
                continue
            if event_types is not None and not isinstance(event, event_types):
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber failed event=%s", type(event).__name__)

    def publish_all(self, events: list[Event]) -> None:
        for event in events:
            self.publish(event)


_PENDING_EVENTS_KEY = "sourceflow.pending_events"


def publish_after_commit(session: Session, bus: EventBus, event: Event) -> None:
    """Queue `event` on `session`; it is delivered only if the transaction commits."""
    pending = session.info.get(_PENDING_EVENTS_KEY)
    if pending is None:
        pending = []
        session.info[_PENDING_EVENTS_KEY] = pending

        def _deliver(committed: Session) -> None:
            bus.publish_all(committed.info.pop(_PENDING_EVENTS_KEY, []))

        def _discard(rolled_back: Session, _transaction: object = None) -> None:
            rolled_back.info.pop(_PENDING_EVENTS_KEY, None)

        sa_event.listen(session, "after_commit", _deliver, once=True)
        sa_event.listen(session, "after_rollback", _discard, once=True)
    pending.append(event)
