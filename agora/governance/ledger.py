"""
Proposal Ledger

Owns every proposal, its state and its funding totals, and the registry of
member commitments. All mutation of that shared state goes through the
operations below:

  - create_proposal   member submits a new proposal (SPONSORING)
  - sponsor           pooled funding; reaching the threshold opens VOTING
  - vote              funded for/against vote; reaching the threshold resolves
  - cancel_proposal   proposer withdraws an unsponsored proposal
  - expire_proposal   scheduler hook that cancels an overdue proposal

Time limits are evaluated lazily: a proposal past its deadline keeps its
state until a sponsor/vote call (or the scheduler hook) touches it.
"""

import math
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from ..constants import (
    MAX_DESCRIPTION_LENGTH,
    SPONSOR_THRESHOLD,
    TIME_LIMIT,
    VOTE_THRESHOLD,
)
from ..exceptions import ConfigurationError
from ..logger import get_logger
from .events import EventLog, LedgerEvent, ProposalCreatedEvent, ProposalStateChangedEvent
from .membership import MembershipDirectory
from .proposals import (
    AlreadyCommittedError,
    GovernanceError,
    InvalidProposalError,
    InvalidStateError,
    NotMemberError,
    NotProposerError,
    Proposal,
    ProposalNotFoundError,
    ProposalState,
    SponsorshipCollectedError,
    TimeLimitExceededError,
    UnauthorizedError,
    ZeroValueError,
    is_json_value,
    to_value,
)
from .voting import VoteCommitment, VoteRegistry

logger = get_logger(__name__)


class ProposalLedger:
    """
    Proposal lifecycle state machine.

    Every public operation runs under one re-entrant lock, so each call is a
    single serializable transaction over the proposal table and the
    commitment registry.

    Args:
        directory:          Membership lookup (is_member / is_council_member)
        time_limit:         Seconds from creation before a proposal expires
        sponsor_threshold:  Pooled value that opens voting
        vote_threshold:     Value either side needs to resolve the vote
        clock:              Callable() → float, defaults to time.time
        sponsor_blocks_vote: When True a sponsorship is recorded as a
                            supporting commitment, so sponsors cannot vote
        event_log:          Notification stream (a fresh one by default)
    """

    # Sponsoring does not write a commitment: a member may sponsor and
    # later vote on the same proposal.
    SPONSOR_WRITES_COMMITMENT = False

    def __init__(
        self,
        directory: MembershipDirectory,
        *,
        time_limit: float = TIME_LIMIT,
        sponsor_threshold: Any = SPONSOR_THRESHOLD,
        vote_threshold: Any = VOTE_THRESHOLD,
        clock: Optional[Callable[[], float]] = None,
        sponsor_blocks_vote: Optional[bool] = None,
        event_log: Optional[EventLog] = None,
    ):
        try:
            time_limit_ok = math.isfinite(time_limit) and time_limit > 0
        except TypeError:
            time_limit_ok = False
        if not time_limit_ok:
            raise ConfigurationError(
                f"time_limit must be a finite positive number, got {time_limit!r}"
            )
        sponsor_threshold = self._threshold(sponsor_threshold, "sponsor_threshold")
        vote_threshold = self._threshold(vote_threshold, "vote_threshold")

        self.directory = directory
        self.time_limit = time_limit
        self.sponsor_threshold = sponsor_threshold
        self.vote_threshold = vote_threshold
        self.sponsor_blocks_vote = (
            self.SPONSOR_WRITES_COMMITMENT if sponsor_blocks_vote is None
            else sponsor_blocks_vote
        )
        self._clock = clock or time.time
        self._event_log = event_log if event_log is not None else EventLog()

        self._lock = threading.RLock()
        self._proposals: Dict[int, Proposal] = {}
        self._proposal_ids: List[int] = []
        self._next_id = 1
        self._registry = VoteRegistry()
        self._held_value = Decimal("0")

    @classmethod
    def from_config(
        cls,
        config,
        directory: Optional[MembershipDirectory] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> "ProposalLedger":
        """Build a ledger from a LedgerConfig."""
        if directory is None:
            from .membership import StaticMembershipDirectory
            directory = StaticMembershipDirectory.from_config(config.membership)
        return cls(
            directory,
            time_limit=config.ledger.time_limit,
            sponsor_threshold=config.ledger.sponsor_threshold,
            vote_threshold=config.ledger.vote_threshold,
            sponsor_blocks_vote=config.ledger.sponsor_blocks_vote,
            clock=clock,
        )

    # ── Internal helpers ──────────────────────────────────────────────

    @staticmethod
    def _threshold(value: Any, name: str) -> Decimal:
        try:
            amount = to_value(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if not amount.is_finite() or amount <= 0:
            raise ConfigurationError(f"{name} must be finite and positive, got {value!r}")
        return amount

    def _now(self) -> float:
        return self._clock()

    def _reject(self, error: GovernanceError) -> GovernanceError:
        logger.warning(f"Rejected: {error}")
        return error

    def _get(self, proposal_id: int, refund: Decimal = Decimal("0")) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise self._reject(ProposalNotFoundError(
                f"Proposal #{proposal_id} does not exist", refund=refund
            ))
        return proposal

    def _require_value(self, value: Any) -> Decimal:
        try:
            amount = to_value(value)
        except (InvalidOperation, TypeError, ValueError):
            raise self._reject(ZeroValueError(f"Invalid value {value!r}"))
        if not amount.is_finite() or amount <= 0:
            raise self._reject(ZeroValueError(f"Funding value must be positive, got {amount}"))
        return amount

    def _require_votable(self, proposal: Proposal, member: str, refund: Decimal) -> None:
        if not self.directory.is_member(member):
            raise self._reject(NotMemberError(
                f"{member} is not an eligible member", refund=refund
            ))
        if self._registry.has_committed(member, proposal.id):
            raise self._reject(AlreadyCommittedError(
                f"{member} already committed to proposal #{proposal.id}",
                refund=refund,
            ))

    def _require_state(self, proposal: Proposal, state: ProposalState, refund: Decimal) -> None:
        if proposal.state != state:
            raise self._reject(InvalidStateError(
                f"Proposal #{proposal.id} is {proposal.state.name}, "
                f"expected {state.name}",
                refund=refund,
            ))

    def _transition(self, proposal: Proposal, new_state: ProposalState, reason: str) -> None:
        now = self._now()
        previous = proposal.transition_to(new_state, reason, timestamp=now)
        self._event_log.emit(ProposalStateChangedEvent(
            proposal_id=proposal.id,
            previous_state=previous,
            new_state=new_state,
            timestamp=now,
        ))

    def _enforce_time_limit(self, proposal: Proposal, refund: Decimal) -> None:
        """Cancel an overdue proposal and fail the triggering call."""
        if not proposal.is_expired(self._now(), self.time_limit):
            return
        self._transition(proposal, ProposalState.CANCELLED, "Time limit exceeded")
        raise self._reject(TimeLimitExceededError(
            f"Proposal #{proposal.id} exceeded its time limit "
            f"({self.time_limit}s since {proposal.created_at}); cancelled",
            refund=refund,
        ))

    # ── Mutating operations ───────────────────────────────────────────

    def create_proposal(self, proposer: str, description: str, payload: Any = None) -> int:
        """
        Create a proposal in SPONSORING and return its id.

        Raises NotMemberError if *proposer* is not an eligible member.
        """
        with self._lock:
            if not self.directory.is_member(proposer):
                raise self._reject(NotMemberError(f"{proposer} is not an eligible member"))
            if description is None:
                description = ""
            if len(description) > MAX_DESCRIPTION_LENGTH:
                raise self._reject(InvalidProposalError(
                    f"Description length {len(description)} exceeds "
                    f"{MAX_DESCRIPTION_LENGTH}"
                ))
            if not is_json_value(payload):
                raise self._reject(InvalidProposalError(
                    f"Payload must be plain JSON data (dict with str keys, list, str, "
                    f"number, bool or None), got {type(payload).__name__}"
                ))

            now = self._now()
            proposal_id = self._next_id
            proposal = Proposal(
                id=proposal_id,
                proposer=proposer,
                description=description,
                payload=payload,
                created_at=now,
            )
            self._next_id += 1
            self._proposals[proposal_id] = proposal
            self._proposal_ids.append(proposal_id)
            self._event_log.emit(ProposalCreatedEvent(
                proposal_id=proposal_id,
                proposer=proposer,
                timestamp=now,
            ))
            logger.info(f"Proposal #{proposal_id} created by {proposer}")
            return proposal_id

    def cancel_proposal(self, proposal_id: int, caller: str) -> None:
        """Proposer withdraws a proposal that has collected no sponsorship."""
        with self._lock:
            proposal = self._get(proposal_id)
            if caller != proposal.proposer:
                raise self._reject(NotProposerError(
                    f"{caller} is not the proposer of #{proposal_id}"
                ))
            self._require_state(proposal, ProposalState.SPONSORING, Decimal("0"))
            if proposal.sponsor_total != 0:
                raise self._reject(SponsorshipCollectedError(
                    f"Proposal #{proposal_id} already holds "
                    f"{proposal.sponsor_total} in sponsorship"
                ))
            self._transition(proposal, ProposalState.CANCELLED, "Cancelled by proposer")

    def sponsor(self, proposal_id: int, caller: str, value: Any) -> Decimal:
        """
        Add *value* to a proposal's sponsorship and return the new total.

        The call that brings the total to SPONSOR_THRESHOLD or beyond opens
        voting. An overdue proposal is cancelled instead and the call fails
        with TimeLimitExceededError; the error's ``refund`` is owed back.
        """
        with self._lock:
            amount = self._require_value(value)
            proposal = self._get(proposal_id, refund=amount)
            self._require_state(proposal, ProposalState.SPONSORING, amount)
            self._require_votable(proposal, caller, amount)
            self._enforce_time_limit(proposal, amount)

            total = proposal.add_sponsorship(caller, amount)
            self._held_value += amount
            if self.sponsor_blocks_vote:
                self._registry.set(caller, proposal_id, VoteCommitment(
                    proposal_id=proposal_id,
                    member=caller,
                    supports=True,
                    amount=amount,
                    timestamp=self._now(),
                ))
            logger.info(
                f"Sponsor: {caller} → #{proposal_id} +{amount} "
                f"(total={total}/{self.sponsor_threshold})"
            )

            if total >= self.sponsor_threshold:
                self._transition(proposal, ProposalState.VOTING, "Sponsor threshold reached")
            return total

    def vote(self, proposal_id: int, caller: str, supports: bool, value: Any) -> VoteCommitment:
        """
        Commit *value* for or against a proposal in VOTING.

        Once either side reaches VOTE_THRESHOLD the proposal resolves:
        APPROVED only if votes_for is strictly greater than votes_against,
        REJECTED otherwise (ties reject).
        """
        with self._lock:
            amount = self._require_value(value)
            proposal = self._get(proposal_id, refund=amount)
            self._require_votable(proposal, caller, amount)
            self._require_state(proposal, ProposalState.VOTING, amount)
            self._enforce_time_limit(proposal, amount)

            supports = bool(supports)
            commitment = VoteCommitment(
                proposal_id=proposal_id,
                member=caller,
                supports=supports,
                amount=amount,
                timestamp=self._now(),
            )
            self._registry.set(caller, proposal_id, commitment)
            proposal.add_vote(supports, amount)
            self._held_value += amount
            logger.info(
                f"Vote: {caller} → {'FOR' if supports else 'AGAINST'} on "
                f"#{proposal_id} ({amount}); "
                f"for={proposal.votes_for} against={proposal.votes_against}"
            )

            if (proposal.votes_for >= self.vote_threshold
                    or proposal.votes_against >= self.vote_threshold):
                if proposal.votes_for > proposal.votes_against:
                    self._transition(proposal, ProposalState.APPROVED, "Vote threshold reached")
                else:
                    self._transition(proposal, ProposalState.REJECTED, "Vote threshold reached")
            return commitment

    def expire_proposal(self, proposal_id: int) -> bool:
        """
        Cancel *proposal_id* if it is open and past its time limit.

        Meant to be driven by an external scheduler; the ledger never calls
        it on its own. Returns True if the proposal was cancelled.
        """
        with self._lock:
            proposal = self._get(proposal_id)
            if proposal.is_terminal or not proposal.is_expired(self._now(), self.time_limit):
                return False
            self._transition(proposal, ProposalState.CANCELLED, "Time limit exceeded (sweep)")
            return True

    def sweep_expired(self) -> List[int]:
        """Apply expire_proposal to every proposal; return cancelled ids."""
        with self._lock:
            return [pid for pid in self._proposal_ids if self.expire_proposal(pid)]

    # ── Queries ───────────────────────────────────────────────────────

    def votable(self, proposal_id: int, member: str) -> bool:
        """True iff *member* is eligible and has no commitment yet."""
        with self._lock:
            self._get(proposal_id)
            return (
                self.directory.is_member(member)
                and not self._registry.has_committed(member, proposal_id)
            )

    def get_proposal(self, proposal_id: int) -> Proposal:
        """Detached snapshot of a proposal."""
        with self._lock:
            return self._get(proposal_id).snapshot()

    def get_proposal_state(self, proposal_id: int) -> ProposalState:
        with self._lock:
            return self._get(proposal_id).state

    def list_proposal_ids(self) -> List[int]:
        with self._lock:
            return list(self._proposal_ids)

    def get_member_commitment(
        self, member: str, proposal_id: int, caller: str
    ) -> Optional[VoteCommitment]:
        """
        Return *member*'s commitment to a proposal, or None if none yet.

        Only the member itself or an administrator may ask.
        """
        with self._lock:
            if caller != member and not self.directory.is_admin(caller):
                raise self._reject(UnauthorizedError(
                    f"{caller} may not read commitments of {member}"
                ))
            if not self.directory.is_member(member):
                raise self._reject(NotMemberError(f"{member} is not an eligible member"))
            self._get(proposal_id)
            return self._registry.get(member, proposal_id)

    def get_commitments(self, proposal_id: int, caller: str) -> List[VoteCommitment]:
        """Administrator audit view of every commitment on a proposal."""
        with self._lock:
            if not self.directory.is_admin(caller):
                raise self._reject(UnauthorizedError(
                    f"{caller} may not audit commitments"
                ))
            self._get(proposal_id)
            return self._registry.for_proposal(proposal_id)

    def deadline(self, proposal_id: int) -> float:
        with self._lock:
            return self._get(proposal_id).deadline(self.time_limit)

    def is_expired(self, proposal_id: int) -> bool:
        """Whether the time limit has passed; does not change state."""
        with self._lock:
            return self._get(proposal_id).is_expired(self._now(), self.time_limit)

    @property
    def proposal_count(self) -> int:
        with self._lock:
            return len(self._proposal_ids)

    @property
    def held_value(self) -> Decimal:
        """Total value accepted by successful sponsor and vote calls."""
        with self._lock:
            return self._held_value

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def events(self) -> List[LedgerEvent]:
        return self._event_log.events

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "timeLimit": self.time_limit,
                "sponsorThreshold": str(self.sponsor_threshold),
                "voteThreshold": str(self.vote_threshold),
                "sponsorBlocksVote": self.sponsor_blocks_vote,
                "nextId": self._next_id,
                "proposalIds": list(self._proposal_ids),
                "proposals": {
                    str(pid): self._proposals[pid].to_dict() for pid in self._proposal_ids
                },
                "commitments": self._registry.to_dict(),
                "heldValue": str(self._held_value),
            }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        directory: MembershipDirectory,
        clock: Optional[Callable[[], float]] = None,
        event_log: Optional[EventLog] = None,
    ) -> "ProposalLedger":
        ledger = cls(
            directory,
            time_limit=data.get("timeLimit", TIME_LIMIT),
            sponsor_threshold=Decimal(data.get("sponsorThreshold", str(SPONSOR_THRESHOLD))),
            vote_threshold=Decimal(data.get("voteThreshold", str(VOTE_THRESHOLD))),
            sponsor_blocks_vote=data.get("sponsorBlocksVote"),
            clock=clock,
            event_log=event_log,
        )
        for pid in data.get("proposalIds", []):
            ledger._proposals[pid] = Proposal.from_dict(data["proposals"][str(pid)])
            ledger._proposal_ids.append(pid)
        ledger._next_id = data.get("nextId", max(ledger._proposal_ids, default=0) + 1)
        ledger._registry = VoteRegistry.from_dict(data.get("commitments", {}))
        ledger._held_value = Decimal(data.get("heldValue", "0"))
        return ledger

    def __repr__(self) -> str:
        return (
            f"<ProposalLedger proposals={len(self._proposal_ids)} "
            f"commitments={len(self._registry)} held={self._held_value}>"
        )
