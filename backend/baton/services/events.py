"""
Chain state-change events.

The engine publishes an event after every committed state change (seeding,
successful hand-off, completion, break, session end). Delivery to live
dashboards belongs to the transport layer, which subscribes a callable here.
The default subscriber writes each event to the ``realtime`` log channel.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, List, Optional

from baton.logging_config import get_logger, log_with_context
from baton.services.clock import utcnow

logger = get_logger("realtime")

CHAIN_SEEDED = "chain.seeded"
CHAIN_HANDOFF = "chain.handoff"
CHAIN_COMPLETED = "chain.completed"
CHAIN_BROKEN = "chain.broken"
SESSION_ENDED = "session.ended"
PHASE_ENDED = "phase.ended"


@dataclass
class ChainEvent:
    """One state change, shaped for a dashboard push."""
    event_type: str
    session_id: str
    chain_id: Optional[str] = None
    phase: Optional[str] = None
    state: Optional[str] = None
    holder_id: Optional[str] = None
    version: Optional[int] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


def log_event(event: ChainEvent):
    log_with_context(logger, "INFO", "Broadcast {}".format(event.event_type),
                     context={"session_id": event.session_id, "chain_id": event.chain_id},
                     extra_data=event.to_dict())


class EventPublisher:
    """Fan-out of chain events to subscribed callables."""

    def __init__(self, subscribers: List[Callable[[ChainEvent], None]] = None):
        self._subscribers = list(subscribers) if subscribers is not None else [log_event]

    def subscribe(self, callback: Callable[[ChainEvent], None]):
        self._subscribers.append(callback)

    def publish(self, event: ChainEvent):
        # A failing subscriber must not undo a committed state change.
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception as exc:
                log_with_context(logger, "ERROR",
                                 "Event subscriber failed for {}: {}".format(event.event_type, exc),
                                 context={"session_id": event.session_id, "chain_id": event.chain_id})


default_publisher = EventPublisher()
