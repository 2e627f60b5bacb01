"""
Agora Funded Proposal Governance

Provides:
  - ProposalState / Proposal / error taxonomy        (proposals.py)
  - VoteCommitment / VoteRegistry                      (voting.py)
  - MembershipDirectory / StaticMembershipDirectory    (membership.py)
  - ProposalCreatedEvent / ProposalStateChangedEvent   (events.py)
  - ProposalLedger                                     (ledger.py)
"""

from .proposals import (
    AlreadyCommittedError,
    AuthorizationError,
    EligibilityError,
    GovernanceError,
    InvalidProposalError,
    InvalidStateError,
    NotMemberError,
    NotProposerError,
    Proposal,
    ProposalLifecycleError,
    ProposalNotFoundError,
    ProposalState,
    SponsorshipCollectedError,
    StateError,
    TERMINAL_STATES,
    TimeLimitExceededError,
    UnauthorizedError,
    ZeroValueError,
)
from .voting import (
    VoteCommitment,
    VoteRegistry,
)
from .membership import (
    MembershipDirectory,
    StaticMembershipDirectory,
)
from .events import (
    EventLog,
    ProposalCreatedEvent,
    ProposalStateChangedEvent,
)
from .ledger import ProposalLedger

__all__ = [
    # Proposals
    "AlreadyCommittedError",
    "AuthorizationError",
    "EligibilityError",
    "GovernanceError",
    "InvalidProposalError",
    "InvalidStateError",
    "NotMemberError",
    "NotProposerError",
    "Proposal",
    "ProposalLifecycleError",
    "ProposalNotFoundError",
    "ProposalState",
    "SponsorshipCollectedError",
    "StateError",
    "TERMINAL_STATES",
    "TimeLimitExceededError",
    "UnauthorizedError",
    "ZeroValueError",
    # Commitments
    "VoteCommitment",
    "VoteRegistry",
    # Membership
    "MembershipDirectory",
    "StaticMembershipDirectory",
    # Events
    "EventLog",
    "ProposalCreatedEvent",
    "ProposalStateChangedEvent",
    # Ledger
    "ProposalLedger",
]
