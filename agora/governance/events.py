"""
Ledger Notifications

Events emitted synchronously by the ledger for external observers such as
audit logs and off-process indexers. Nothing inside the ledger reads them.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Union

from ..logger import get_logger
from .proposals import ProposalState

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ProposalCreatedEvent:
    """Emitted when a proposal is created."""
    proposal_id: int
    proposer: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ProposalCreated",
            "proposalId": self.proposal_id,
            "proposer": self.proposer,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ProposalStateChangedEvent:
    """Emitted on every state transition."""
    proposal_id: int
    previous_state: ProposalState
    new_state: ProposalState
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ProposalStateChanged",
            "proposalId": self.proposal_id,
            "previousState": self.previous_state.name,
            "newState": self.new_state.name,
            "timestamp": self.timestamp,
        }


LedgerEvent = Union[ProposalCreatedEvent, ProposalStateChangedEvent]


# ══════════════════════════════════════════════════════════════════════
#  EVENT LOG
# ══════════════════════════════════════════════════════════════════════

class EventLog:
    """
    Append-only notification stream.

    Subscribers are called in registration order right after an event is
    appended. They receive no acknowledgement channel; an exception raised
    by a subscriber is logged and dropped so the ledger operation that
    emitted the event still completes.
    """

    def __init__(self):
        self._events: List[LedgerEvent] = []
        self._subscribers: List[Callable[[LedgerEvent], None]] = []

    def subscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event: LedgerEvent) -> LedgerEvent:
        self._events.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    f"Subscriber {callback!r} failed on {type(event).__name__} "
                    f"for proposal #{event.proposal_id}"
                )
        return event

    @property
    def events(self) -> List[LedgerEvent]:
        return list(self._events)

    def for_proposal(self, proposal_id: int) -> List[LedgerEvent]:
        return [e for e in self._events if e.proposal_id == proposal_id]

    def __len__(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return f"<EventLog events={len(self._events)} subscribers={len(self._subscribers)}>"
