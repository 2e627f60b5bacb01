"""
Funded Proposals

Defines the proposal lifecycle states, the transition table that governs
them, the error taxonomy of the ledger, and the Proposal dataclass that
tracks an individual proposal from sponsoring to its final outcome.
"""

import copy
import hashlib
import json
import math
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from ..logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class GovernanceError(Exception):
    """Base governance exception.

    ``refund`` is the value offered with the failed call, which the caller
    must be given back; it is zero for calls that carry no value.
    """

    def __init__(self, message: str = "", refund: Decimal = Decimal("0")):
        super().__init__(message)
        self.refund = refund


class ProposalNotFoundError(GovernanceError):
    """No proposal exists with the requested id."""


class AuthorizationError(GovernanceError):
    """Caller may not perform the requested operation."""


class NotProposerError(AuthorizationError):
    """Only the original proposer may cancel a proposal."""


class UnauthorizedError(AuthorizationError):
    """Caller is neither the member concerned nor an administrator."""


class StateError(GovernanceError):
    """Proposal is not in a state that allows the operation."""


class InvalidStateError(StateError):
    """Operation invoked against a proposal in the wrong state."""


class SponsorshipCollectedError(StateError):
    """Proposal already holds sponsorship and can no longer be cancelled."""


class ProposalLifecycleError(StateError):
    """Raised on illegal state transitions."""


class EligibilityError(GovernanceError):
    """Caller may not participate in this proposal."""


class NotMemberError(EligibilityError):
    """Identity is not a recognized member."""


class AlreadyCommittedError(EligibilityError):
    """Member already holds a commitment for this proposal."""


class TimeLimitExceededError(GovernanceError):
    """Proposal outlived its time limit; it has been cancelled."""


class ZeroValueError(GovernanceError):
    """Funding call carried no value."""


class InvalidProposalError(GovernanceError):
    """Raised when proposal data is invalid."""


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ProposalState(IntEnum):
    """Lifecycle stage of a proposal."""
    SPONSORING = 0    # Collecting pooled sponsorship
    VOTING = 1        # Funded vote in progress
    CANCELLED = 2     # Withdrawn by proposer or expired
    APPROVED = 3      # votes_for reached the threshold and won
    REJECTED = 4      # Threshold reached without a strict majority for


TERMINAL_STATES = frozenset({
    ProposalState.CANCELLED,
    ProposalState.APPROVED,
    ProposalState.REJECTED,
})

# Valid forward transitions
_VALID_TRANSITIONS: Dict[ProposalState, frozenset] = {
    ProposalState.SPONSORING: frozenset({ProposalState.VOTING, ProposalState.CANCELLED}),
    ProposalState.VOTING:     frozenset({ProposalState.APPROVED, ProposalState.REJECTED,
                                         ProposalState.CANCELLED}),
    # Terminal states: no further transitions
    ProposalState.CANCELLED:  frozenset(),
    ProposalState.APPROVED:   frozenset(),
    ProposalState.REJECTED:   frozenset(),
}


def allowed_transitions(state: ProposalState) -> frozenset:
    return _VALID_TRANSITIONS[state]


def is_json_value(value: Any) -> bool:
    """True if *value* survives a JSON round trip unchanged."""
    if value is None or isinstance(value, (bool, int, str)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, list):
        return all(is_json_value(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and is_json_value(v) for k, v in value.items())
    return False


def to_value(value: Any) -> Decimal:
    """Normalise an int / str / Decimal amount to Decimal."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Avoid binary float artefacts in monetary totals
        return Decimal(str(value))
    return Decimal(value)


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Proposal:
    """
    A funded governance proposal.

    Fields:
        id:             Unique monotonic identifier (starts at 1)
        proposer:       Identity of the member who created it
        description:    Human-readable description
        payload:        Opaque content attached at creation
        created_at:     Creation timestamp, anchor for the time limit
        state:          Current lifecycle stage
        sponsor_total:  Value committed while sponsoring
        votes_for:      Value committed in support while voting
        votes_against:  Value committed in opposition while voting
        closed_at:      Timestamp of reaching a terminal state
        sponsors:       Ordered (member, amount) sponsorship receipts
    """
    id: int
    proposer: str
    description: str
    payload: Any = None
    created_at: float = field(default_factory=time.time)
    state: ProposalState = ProposalState.SPONSORING
    sponsor_total: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_for: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_against: Decimal = field(default_factory=lambda: Decimal("0"))
    closed_at: Optional[float] = None
    sponsors: List[Tuple[str, Decimal]] = field(default_factory=list)
    _history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if self.id < 1:
            raise InvalidProposalError(f"Proposal id must be >= 1, got {self.id}")
        if not self.proposer:
            raise InvalidProposalError("Proposer identity is required")
        if not self._history:
            self._history.append({
                "from": "INIT",
                "to": self.state.name,
                "reason": "created",
                "timestamp": self.created_at,
            })

    # ── Properties ────────────────────────────────────────────────────

    @property
    def proposal_hash(self) -> str:
        """Deterministic digest of the immutable creation fields."""
        digest_input = (
            str(self.id).encode()
            + self.proposer.encode()
            + self.description.encode()
            + json.dumps(self.payload, sort_keys=True, separators=(",", ":"),
                         default=repr).encode()
            + str(self.created_at).encode()
        )
        return hashlib.blake2b(digest_input, digest_size=32).hexdigest()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_sponsoring(self) -> bool:
        return self.state == ProposalState.SPONSORING

    @property
    def is_votable(self) -> bool:
        return self.state == ProposalState.VOTING

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def deadline(self, time_limit: float) -> float:
        return self.created_at + time_limit

    def is_expired(self, now: float, time_limit: float) -> bool:
        """True once *now* is strictly past the time limit."""
        return now > self.created_at + time_limit

    # ── State transitions ─────────────────────────────────────────────

    def transition_to(self, new_state: ProposalState, reason: str = "",
                      timestamp: Optional[float] = None) -> ProposalState:
        """
        Advance proposal to *new_state* and return the previous state.

        Raises ProposalLifecycleError on invalid transitions.
        """
        allowed = _VALID_TRANSITIONS[self.state]
        if new_state not in allowed:
            raise ProposalLifecycleError(
                f"Cannot transition from {self.state.name} → {new_state.name}. "
                f"Allowed: {sorted(s.name for s in allowed)}"
            )
        when = time.time() if timestamp is None else timestamp
        old = self.state
        self._history.append({
            "from": old.name,
            "to": new_state.name,
            "reason": reason,
            "timestamp": when,
        })
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self.closed_at = when
        logger.info(
            f"Proposal #{self.id}: {old.name} → {new_state.name} | {reason}"
        )
        return old

    def add_sponsorship(self, member: str, amount: Decimal) -> Decimal:
        if self.state != ProposalState.SPONSORING:
            raise ProposalLifecycleError(
                f"Proposal #{self.id} is not sponsoring (state={self.state.name})"
            )
        self.sponsor_total += amount
        self.sponsors.append((member, amount))
        return self.sponsor_total

    def add_vote(self, supports: bool, amount: Decimal) -> None:
        if self.state != ProposalState.VOTING:
            raise ProposalLifecycleError(
                f"Proposal #{self.id} is not voting (state={self.state.name})"
            )
        if supports:
            self.votes_for += amount
        else:
            self.votes_against += amount

    def snapshot(self) -> "Proposal":
        """Detached copy safe to hand to readers."""
        return copy.deepcopy(self)

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposer": self.proposer,
            "description": self.description,
            "payload": self.payload,
            "createdAt": self.created_at,
            "state": self.state.name,
            "sponsorTotal": str(self.sponsor_total),
            "votesFor": str(self.votes_for),
            "votesAgainst": str(self.votes_against),
            "closedAt": self.closed_at,
            "sponsors": [[m, str(a)] for m, a in self.sponsors],
            "proposalHash": self.proposal_hash,
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=data["id"],
            proposer=data["proposer"],
            description=data.get("description", ""),
            payload=data.get("payload"),
            created_at=data["createdAt"],
            state=ProposalState[data.get("state", "SPONSORING")],
            sponsor_total=Decimal(data.get("sponsorTotal", "0")),
            votes_for=Decimal(data.get("votesFor", "0")),
            votes_against=Decimal(data.get("votesAgainst", "0")),
            closed_at=data.get("closedAt"),
            sponsors=[(m, Decimal(a)) for m, a in data.get("sponsors", [])],
            _history=list(data.get("history", [])),
        )

    def __repr__(self) -> str:
        return (
            f"<Proposal #{self.id} by {self.proposer} state={self.state.name} "
            f"sponsored={self.sponsor_total} for={self.votes_for} "
            f"against={self.votes_against}>"
        )
