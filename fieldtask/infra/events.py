from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any

from sqlmodel import Session

from fieldtask.domain.models import EventEnvelope, EventRecord
from fieldtask.infra.db import engine

EventHandler = Callable[[EventEnvelope], None]

WILDCARD = "*"

logger = logging.getLogger(__name__)


def entity_of(event_type: str, payload: Mapping[str, Any]) -> tuple[str | None, str | None]:
    """The entity an event concerns: ``task.action`` with a ``task_id`` names that task."""
    entity_type = event_type.split(".", 1)[0].strip()
    if not entity_type:
        return None, None
    raw_id = payload.get(f"{entity_type}_id")
    return entity_type, str(raw_id) if raw_id is not None else None


class EventBus:
    """Persists domain events and fans them out to in-process subscribers.

    Subscribers run after the event row is written; a failing subscriber is
    logged and never undoes or fails the mutation that emitted the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(handler)

    def _deliver(self, event: EventEnvelope) -> None:
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get(WILDCARD, [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event subscriber failed",
                    extra={"event_type": event.event_type, "org_id": event.org_id},
                )

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        record = EventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            org_id=event.org_id,
            ts=event.ts,
            actor_id=event.actor_id,
            correlation_id=event.correlation_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            payload=event.payload,
        )
        if session is not None:
            session.add(record)
        else:
            with Session(engine) as own_session:
                own_session.add(record)
                own_session.commit()

        logger.debug(
            "event published",
            extra={"event_type": event.event_type, "org_id": event.org_id, "task_id": event.payload.get("task_id")},
        )
        self._deliver(event)

    def publish_dict(
        self,
        event_type: str,
        org_id: str | None,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        entity_type, entity_id = entity_of(event_type, payload)
        event = EventEnvelope(
            event_type=event_type,
            org_id=org_id,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
        )
        self.publish(event)
        return event


event_bus = EventBus()
