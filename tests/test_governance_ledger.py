"""
Funded Proposal Ledger Test Suite

Coverage:
  - Proposal creation: sequential ids, membership gate, creation events
  - Sponsoring: accumulation, threshold crossing (exact and overshoot),
    zero-value / state / eligibility rejections with refunds
  - Voting: approval, rejection, strict-majority tie-break, double-vote
    exclusion, sponsor/vote policy switch
  - Time limits: lazy expiry on sponsor/vote, scheduler hook, sweep
  - Cancellation: proposer-only, unsponsored-only, SPONSORING-only
  - Commitment access control
  - Transition graph and monotonic totals
  - Event log, vote registry, membership directory
  - Serialized access under threads
"""

import os
import sys
import threading
from decimal import Decimal

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from agora.governance import (
    AlreadyCommittedError,
    EventLog,
    GovernanceError,
    InvalidProposalError,
    InvalidStateError,
    NotMemberError,
    NotProposerError,
    Proposal,
    ProposalCreatedEvent,
    ProposalLedger,
    ProposalLifecycleError,
    ProposalNotFoundError,
    ProposalState,
    ProposalStateChangedEvent,
    SponsorshipCollectedError,
    StaticMembershipDirectory,
    TimeLimitExceededError,
    UnauthorizedError,
    VoteCommitment,
    VoteRegistry,
    ZeroValueError,
)
from agora.governance.proposals import allowed_transitions
from agora.exceptions import ConfigurationError
from agora.constants import (
    SPONSOR_THRESHOLD,
    TIME_LIMIT,
    VOTE_THRESHOLD,
)


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

M1, M2, M3, M4, M5, M6 = "m1", "m2", "m3", "m4", "m5", "m6"
STRANGER = "stranger"
AUDITOR = "auditor"
DAY = 24 * 60 * 60
T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock for deterministic time-limit tests."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_directory(extra=()):
    return StaticMembershipDirectory(
        members=[M1, M2, M3, M4, M5, M6, *extra],
        council=[M1],
        admins=[AUDITOR],
    )


def make_ledger(clock=None, **kwargs) -> ProposalLedger:
    kwargs.setdefault("time_limit", 7 * DAY)
    kwargs.setdefault("sponsor_threshold", 1_000_000)
    kwargs.setdefault("vote_threshold", 100_000)
    return ProposalLedger(make_directory(), clock=clock or FakeClock(), **kwargs)


def open_voting(ledger: ProposalLedger, proposer=M1, sponsor=M2) -> int:
    """Create a proposal and fully sponsor it so that it enters VOTING."""
    pid = ledger.create_proposal(proposer, "Fund the community garden")
    ledger.sponsor(pid, sponsor, ledger.sponsor_threshold)
    assert ledger.get_proposal_state(pid) == ProposalState.VOTING
    return pid


# ══════════════════════════════════════════════════════════════════════
#  CONSTANTS & CONSTRUCTION
# ══════════════════════════════════════════════════════════════════════


class TestConstants:

    def test_default_constants(self):
        assert TIME_LIMIT == 7 * DAY
        assert SPONSOR_THRESHOLD == Decimal(1_000_000)
        assert VOTE_THRESHOLD == Decimal(100_000)

    def test_ledger_defaults_to_constants(self):
        ledger = ProposalLedger(make_directory())
        assert ledger.time_limit == TIME_LIMIT
        assert ledger.sponsor_threshold == SPONSOR_THRESHOLD
        assert ledger.vote_threshold == VOTE_THRESHOLD
        assert ledger.sponsor_blocks_vote is False

    @pytest.mark.parametrize("kwargs", [
        {"time_limit": 0},
        {"sponsor_threshold": 0},
        {"vote_threshold": -5},
        {"time_limit": float("nan")},
        {"time_limit": float("inf")},
        {"sponsor_threshold": Decimal("NaN")},
        {"vote_threshold": Decimal("Infinity")},
        {"vote_threshold": "plenty"},
    ])
    def test_invalid_parameters_raise(self, kwargs):
        with pytest.raises(ConfigurationError):
            ProposalLedger(make_directory(), **kwargs)


# ══════════════════════════════════════════════════════════════════════
#  CREATION
# ══════════════════════════════════════════════════════════════════════


class TestProposalCreation:

    def test_ids_are_sequential_from_one(self):
        ledger = make_ledger()
        ids = [ledger.create_proposal(M1, f"Proposal {i}") for i in range(3)]
        assert ids == [1, 2, 3]
        assert ledger.list_proposal_ids() == [1, 2, 3]
        assert ledger.proposal_count == 3

    def test_initial_state(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "Repaint the hall", payload={"budget": 500})
        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.SPONSORING
        assert p.proposer == M1
        assert p.description == "Repaint the hall"
        assert p.payload == {"budget": 500}
        assert p.created_at == T0
        assert p.sponsor_total == 0
        assert p.votes_for == 0
        assert p.votes_against == 0
        assert p.closed_at is None

    def test_non_member_cannot_create(self):
        ledger = make_ledger()
        with pytest.raises(NotMemberError):
            ledger.create_proposal(STRANGER, "Sneaky")
        assert ledger.list_proposal_ids() == []
        # The failed call did not consume an id
        assert ledger.create_proposal(M1, "First real one") == 1

    def test_creation_event(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "Hello")
        events = ledger.events
        assert len(events) == 1
        assert isinstance(events[0], ProposalCreatedEvent)
        assert events[0].proposal_id == pid
        assert events[0].proposer == M1
        assert events[0].timestamp == T0

    def test_description_too_long_raises(self):
        ledger = make_ledger()
        with pytest.raises(InvalidProposalError):
            ledger.create_proposal(M1, "x" * 10_001)

    @pytest.mark.parametrize("payload", [
        (1, 2),
        {1: "int key"},
        b"raw bytes",
        {"nested": [Decimal("1.5")]},
        {"amount": float("nan")},
    ])
    def test_non_json_payload_rejected(self, payload):
        ledger = make_ledger()
        with pytest.raises(InvalidProposalError, match="Payload"):
            ledger.create_proposal(M1, "Odd payload", payload=payload)
        assert ledger.proposal_count == 0

    def test_json_payload_accepted(self):
        ledger = make_ledger()
        payload = {"fee_bps": 15, "targets": ["a", "b"], "ratio": 0.5, "note": None}
        pid = ledger.create_proposal(M1, "Raise fee", payload=payload)
        assert ledger.get_proposal(pid).payload == payload

    def test_ids_never_reused_after_cancel(self):
        ledger = make_ledger()
        first = ledger.create_proposal(M1, "One")
        ledger.cancel_proposal(first, M1)
        assert ledger.create_proposal(M1, "Two") == 2

    def test_unknown_proposal_raises(self):
        ledger = make_ledger()
        with pytest.raises(ProposalNotFoundError):
            ledger.get_proposal(42)
        with pytest.raises(ProposalNotFoundError):
            ledger.get_proposal_state(42)


# ══════════════════════════════════════════════════════════════════════
#  SPONSORING
# ══════════════════════════════════════════════════════════════════════


class TestSponsoring:

    def test_two_sponsors_reach_threshold(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")

        assert ledger.sponsor(pid, M2, 600_000) == Decimal(600_000)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING

        assert ledger.sponsor(pid, M3, 400_000) == Decimal(1_000_000)
        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.VOTING
        assert p.sponsor_total == 1_000_000

    def test_overshoot_opens_voting(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 1_500_000)
        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.VOTING
        assert p.sponsor_total == 1_500_000

    def test_transition_only_on_crossing_call(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 999_999)
        changes = [e for e in ledger.events if isinstance(e, ProposalStateChangedEvent)]
        assert changes == []
        ledger.sponsor(pid, M3, 1)
        changes = [e for e in ledger.events if isinstance(e, ProposalStateChangedEvent)]
        assert len(changes) == 1
        assert changes[0].previous_state == ProposalState.SPONSORING
        assert changes[0].new_state == ProposalState.VOTING

    def test_sponsor_receipts_recorded(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 100)
        ledger.sponsor(pid, M3, 250)
        assert ledger.get_proposal(pid).sponsors == [(M2, Decimal(100)), (M3, Decimal(250))]

    def test_sponsoring_does_not_write_commitment(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 100)
        assert ledger.get_member_commitment(M2, pid, M2) is None
        assert ledger.votable(pid, M2)
        # Same member may add to the pool again
        assert ledger.sponsor(pid, M2, 50) == Decimal(150)

    @pytest.mark.parametrize("value", [0, -10, "0", "abc", Decimal("NaN")])
    def test_zero_or_invalid_value_rejected(self, value):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        with pytest.raises(ZeroValueError) as exc_info:
            ledger.sponsor(pid, M2, value)
        assert exc_info.value.refund == 0
        assert ledger.get_proposal(pid).sponsor_total == 0

    def test_non_member_rejected_with_refund(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        with pytest.raises(NotMemberError) as exc_info:
            ledger.sponsor(pid, STRANGER, 500)
        assert exc_info.value.refund == Decimal(500)
        assert ledger.held_value == 0

    def test_sponsor_in_voting_rejected(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        with pytest.raises(InvalidStateError) as exc_info:
            ledger.sponsor(pid, M3, 10)
        assert exc_info.value.refund == Decimal(10)
        assert ledger.get_proposal(pid).sponsor_total == 1_000_000

    def test_sponsor_unknown_proposal(self):
        ledger = make_ledger()
        with pytest.raises(ProposalNotFoundError) as exc_info:
            ledger.sponsor(7, M2, 10)
        assert exc_info.value.refund == Decimal(10)

    def test_held_value_tracks_accepted_funds(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 300)
        with pytest.raises(NotMemberError):
            ledger.sponsor(pid, STRANGER, 1000)
        assert ledger.held_value == Decimal(300)


# ══════════════════════════════════════════════════════════════════════
#  VOTING
# ══════════════════════════════════════════════════════════════════════


class TestVoting:

    def test_votes_for_reach_threshold_approves(self):
        ledger = make_ledger()
        pid = open_voting(ledger)

        ledger.vote(pid, M4, True, 60_000)
        assert ledger.get_proposal_state(pid) == ProposalState.VOTING

        ledger.vote(pid, M5, True, 50_000)
        p = ledger.get_proposal(pid)
        assert p.votes_for == 110_000
        assert p.votes_against == 0
        assert p.state == ProposalState.APPROVED
        assert p.closed_at is not None

    def test_votes_against_reach_threshold_rejects(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M6, False, 100_000)
        p = ledger.get_proposal(pid)
        assert p.votes_for == 0
        assert p.votes_against == 100_000
        assert p.state == ProposalState.REJECTED

    def test_against_wins_with_mixed_votes(self):
        ledger = make_ledger(vote_threshold=100)
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 50)
        ledger.vote(pid, M5, False, 50)
        assert ledger.get_proposal_state(pid) == ProposalState.VOTING
        ledger.vote(pid, M6, False, 60)
        assert ledger.get_proposal_state(pid) == ProposalState.REJECTED

    def test_for_wins_with_mixed_votes(self):
        ledger = make_ledger(vote_threshold=100)
        pid = open_voting(ledger)
        ledger.vote(pid, M4, False, 90)
        ledger.vote(pid, M5, True, 100)
        assert ledger.get_proposal_state(pid) == ProposalState.APPROVED

    def test_tie_at_threshold_rejects(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        data = ledger.to_dict()
        data["proposals"][str(pid)]["votesFor"] = "100000"
        data["proposals"][str(pid)]["votesAgainst"] = "50000"
        restored = ProposalLedger.from_dict(data, make_directory(), clock=FakeClock())

        restored.vote(pid, M6, False, 50_000)
        p = restored.get_proposal(pid)
        assert p.votes_for == p.votes_against == 100_000
        assert p.state == ProposalState.REJECTED

    def test_commitment_recorded(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = open_voting(ledger)
        clock.advance(60)
        returned = ledger.vote(pid, M4, True, 60_000)
        stored = ledger.get_member_commitment(M4, pid, M4)
        assert stored == returned
        assert stored.supports is True
        assert stored.amount == Decimal(60_000)
        assert stored.timestamp == T0 + 60

    def test_double_vote_rejected(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 10)
        with pytest.raises(AlreadyCommittedError) as exc_info:
            ledger.vote(pid, M4, False, 20)
        assert exc_info.value.refund == Decimal(20)
        p = ledger.get_proposal(pid)
        assert p.votes_for == 10
        assert p.votes_against == 0
        assert not ledger.votable(pid, M4)

    def test_vote_during_sponsoring_rejected(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        with pytest.raises(InvalidStateError):
            ledger.vote(pid, M4, True, 10)
        assert ledger.get_member_commitment(M4, pid, M4) is None

    def test_zero_vote_rejected(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        with pytest.raises(ZeroValueError):
            ledger.vote(pid, M4, True, 0)
        assert ledger.votable(pid, M4)

    def test_non_member_vote_rejected(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        with pytest.raises(NotMemberError):
            ledger.vote(pid, STRANGER, True, 10)

    def test_sponsor_may_also_vote_by_default(self):
        ledger = make_ledger()
        pid = open_voting(ledger, sponsor=M2)
        ledger.vote(pid, M2, True, 10)
        assert ledger.get_member_commitment(M2, pid, M2).amount == Decimal(10)

    def test_sponsor_blocks_vote_policy(self):
        ledger = make_ledger(sponsor_blocks_vote=True)
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 600_000)
        assert not ledger.votable(pid, M2)
        with pytest.raises(AlreadyCommittedError):
            ledger.sponsor(pid, M2, 400_000)
        ledger.sponsor(pid, M3, 400_000)
        with pytest.raises(AlreadyCommittedError):
            ledger.vote(pid, M2, True, 10)
        commitment = ledger.get_member_commitment(M2, pid, M2)
        assert commitment.supports is True
        assert commitment.amount == Decimal(600_000)

    def test_held_value_includes_votes(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 60_000)
        assert ledger.held_value == Decimal(1_060_000)


# ══════════════════════════════════════════════════════════════════════
#  TIME LIMITS
# ══════════════════════════════════════════════════════════════════════


class TestTimeLimit:

    def test_sponsor_after_limit_cancels(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        clock.advance(8 * DAY)

        with pytest.raises(TimeLimitExceededError) as exc_info:
            ledger.sponsor(pid, M2, 500)
        assert exc_info.value.refund == Decimal(500)

        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.CANCELLED
        assert p.sponsor_total == 0
        assert p.closed_at == T0 + 8 * DAY
        assert ledger.held_value == 0

        last = ledger.events[-1]
        assert isinstance(last, ProposalStateChangedEvent)
        assert last.previous_state == ProposalState.SPONSORING
        assert last.new_state == ProposalState.CANCELLED

    def test_vote_after_limit_cancels(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 10)
        clock.advance(8 * DAY)

        with pytest.raises(TimeLimitExceededError) as exc_info:
            ledger.vote(pid, M5, True, 99_990)
        assert exc_info.value.refund == Decimal(99_990)

        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.CANCELLED
        assert p.votes_for == 10
        assert ledger.get_member_commitment(M5, pid, M5) is None

    def test_exact_deadline_is_still_open(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        clock.advance(7 * DAY)
        ledger.sponsor(pid, M2, 100)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING

    def test_expiry_is_lazy(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        clock.advance(30 * DAY)
        assert ledger.is_expired(pid)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING
        assert ledger.deadline(pid) == T0 + 7 * DAY

    def test_later_calls_see_cancelled_state(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        clock.advance(8 * DAY)
        with pytest.raises(TimeLimitExceededError):
            ledger.sponsor(pid, M2, 1)
        with pytest.raises(InvalidStateError):
            ledger.sponsor(pid, M3, 1)

    def test_ineligible_caller_does_not_trigger_expiry(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        clock.advance(8 * DAY)
        with pytest.raises(NotMemberError):
            ledger.sponsor(pid, STRANGER, 1)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING

    def test_expire_proposal_hook(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        pid = ledger.create_proposal(M1, "P1")
        assert ledger.expire_proposal(pid) is False
        clock.advance(8 * DAY)
        assert ledger.expire_proposal(pid) is True
        assert ledger.get_proposal_state(pid) == ProposalState.CANCELLED
        assert ledger.expire_proposal(pid) is False

    def test_sweep_expired(self):
        clock = FakeClock()
        ledger = make_ledger(clock)
        sponsoring = ledger.create_proposal(M1, "Sponsoring")
        voting = open_voting(ledger)
        approved = open_voting(ledger)
        ledger.vote(approved, M4, True, 100_000)
        clock.advance(3 * DAY)
        fresh = ledger.create_proposal(M2, "Fresh")
        clock.advance(5 * DAY)

        assert ledger.sweep_expired() == [sponsoring, voting]
        assert ledger.get_proposal_state(approved) == ProposalState.APPROVED
        assert ledger.get_proposal_state(fresh) == ProposalState.SPONSORING


# ══════════════════════════════════════════════════════════════════════
#  CANCELLATION
# ══════════════════════════════════════════════════════════════════════


class TestCancellation:

    def test_proposer_cancels(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.cancel_proposal(pid, M1)
        assert ledger.get_proposal_state(pid) == ProposalState.CANCELLED
        last = ledger.events[-1]
        assert last.new_state == ProposalState.CANCELLED

    def test_other_member_cannot_cancel(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        with pytest.raises(NotProposerError):
            ledger.cancel_proposal(pid, M2)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING

    def test_cannot_cancel_after_sponsorship(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 1)
        with pytest.raises(SponsorshipCollectedError):
            ledger.cancel_proposal(pid, M1)
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING

    def test_cannot_cancel_while_voting(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        with pytest.raises(InvalidStateError):
            ledger.cancel_proposal(pid, M1)

    def test_cannot_cancel_twice(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.cancel_proposal(pid, M1)
        with pytest.raises(InvalidStateError):
            ledger.cancel_proposal(pid, M1)

    def test_cancelled_proposal_rejects_funding(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        ledger.cancel_proposal(pid, M1)
        with pytest.raises(InvalidStateError):
            ledger.sponsor(pid, M2, 10)
        with pytest.raises(InvalidStateError):
            ledger.vote(pid, M2, True, 10)


# ══════════════════════════════════════════════════════════════════════
#  COMMITMENT ACCESS
# ══════════════════════════════════════════════════════════════════════


class TestCommitmentAccess:

    def test_member_reads_own_commitment(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        assert ledger.get_member_commitment(M4, pid, M4) is None
        ledger.vote(pid, M4, False, 5)
        c = ledger.get_member_commitment(M4, pid, M4)
        assert (c.supports, c.amount) == (False, Decimal(5))

    def test_third_party_cannot_read(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 5)
        with pytest.raises(UnauthorizedError):
            ledger.get_member_commitment(M4, pid, M5)

    def test_admin_can_read(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 5)
        assert ledger.get_member_commitment(M4, pid, AUDITOR).amount == Decimal(5)

    def test_member_must_be_eligible(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        with pytest.raises(NotMemberError):
            ledger.get_member_commitment(STRANGER, pid, AUDITOR)

    def test_admin_audit_view(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 5)
        ledger.vote(pid, M5, False, 7)
        commitments = ledger.get_commitments(pid, AUDITOR)
        assert [c.member for c in commitments] == [M4, M5]
        with pytest.raises(UnauthorizedError):
            ledger.get_commitments(pid, M4)


class TestVotable:

    def test_votable(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        assert ledger.votable(pid, M4)
        assert not ledger.votable(pid, STRANGER)
        ledger.vote(pid, M4, True, 1)
        assert not ledger.votable(pid, M4)

    def test_votable_unknown_proposal(self):
        ledger = make_ledger()
        with pytest.raises(ProposalNotFoundError):
            ledger.votable(3, M4)


# ══════════════════════════════════════════════════════════════════════
#  INVARIANTS
# ══════════════════════════════════════════════════════════════════════


class TestInvariants:

    def _assert_history_follows_graph(self, proposal: Proposal):
        history = proposal.history
        assert history[0]["from"] == "INIT"
        assert history[0]["to"] == ProposalState.SPONSORING.name
        for entry in history[1:]:
            src = ProposalState[entry["from"]]
            dst = ProposalState[entry["to"]]
            assert dst in allowed_transitions(src)

    def test_lifecycle_paths_follow_graph(self):
        clock = FakeClock()
        ledger = make_ledger(clock, vote_threshold=100)
        approved = open_voting(ledger)
        ledger.vote(approved, M4, True, 100)
        rejected = open_voting(ledger)
        ledger.vote(rejected, M4, False, 100)
        withdrawn = ledger.create_proposal(M2, "Withdrawn")
        ledger.cancel_proposal(withdrawn, M2)
        expired = open_voting(ledger)
        clock.advance(8 * DAY)
        with pytest.raises(TimeLimitExceededError):
            ledger.vote(expired, M5, True, 1)

        for pid in ledger.list_proposal_ids():
            self._assert_history_follows_graph(ledger.get_proposal(pid))

    def test_totals_never_decrease(self):
        ledger = make_ledger(vote_threshold=1_000)
        pid = ledger.create_proposal(M1, "P1")
        snapshots = [ledger.get_proposal(pid)]

        steps = [
            lambda: ledger.sponsor(pid, M2, 400_000),
            lambda: ledger.sponsor(pid, STRANGER, 5),
            lambda: ledger.vote(pid, M3, True, 5),
            lambda: ledger.sponsor(pid, M3, 600_000),
            lambda: ledger.vote(pid, M4, True, 300),
            lambda: ledger.vote(pid, M4, True, 300),
            lambda: ledger.vote(pid, M5, False, 200),
            lambda: ledger.vote(pid, M6, True, 800),
            lambda: ledger.vote(pid, M2, False, 5_000),
        ]
        for step in steps:
            try:
                step()
            except GovernanceError:
                pass
            snapshots.append(ledger.get_proposal(pid))

        for before, after in zip(snapshots, snapshots[1:]):
            assert after.sponsor_total >= before.sponsor_total
            assert after.votes_for >= before.votes_for
            assert after.votes_against >= before.votes_against
        assert snapshots[-1].state == ProposalState.APPROVED

    def test_terminal_proposal_is_frozen(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, True, 100_000)
        before = ledger.get_proposal(pid)
        for call in (
            lambda: ledger.vote(pid, M5, False, 100_000),
            lambda: ledger.sponsor(pid, M5, 1),
            lambda: ledger.cancel_proposal(pid, M1),
        ):
            with pytest.raises(InvalidStateError):
                call()
        assert ledger.expire_proposal(pid) is False
        after = ledger.get_proposal(pid)
        assert after.state == before.state == ProposalState.APPROVED
        assert after.votes_against == before.votes_against

    def test_snapshot_is_detached(self):
        ledger = make_ledger()
        pid = ledger.create_proposal(M1, "P1")
        snapshot = ledger.get_proposal(pid)
        snapshot.state = ProposalState.APPROVED
        snapshot.sponsor_total = Decimal(999)
        p = ledger.get_proposal(pid)
        assert p.state == ProposalState.SPONSORING
        assert p.sponsor_total == 0


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL MODEL
# ══════════════════════════════════════════════════════════════════════


class TestProposalModel:

    def test_invalid_transition_raises(self):
        p = Proposal(id=1, proposer=M1, description="d")
        with pytest.raises(ProposalLifecycleError, match="Cannot transition"):
            p.transition_to(ProposalState.APPROVED)

    def test_terminal_has_no_exits(self):
        for state in (ProposalState.CANCELLED, ProposalState.APPROVED, ProposalState.REJECTED):
            assert allowed_transitions(state) == frozenset()

    def test_missing_proposer_raises(self):
        with pytest.raises(InvalidProposalError):
            Proposal(id=1, proposer="", description="d")

    def test_id_must_be_positive(self):
        with pytest.raises(InvalidProposalError):
            Proposal(id=0, proposer=M1, description="d")

    def test_add_vote_outside_voting_raises(self):
        p = Proposal(id=1, proposer=M1, description="d")
        with pytest.raises(ProposalLifecycleError):
            p.add_vote(True, Decimal(1))

    def test_proposal_hash_deterministic(self):
        p = Proposal(id=1, proposer=M1, description="d", created_at=T0)
        assert p.proposal_hash == p.proposal_hash
        assert len(p.proposal_hash) == 64

    def test_to_dict_from_dict(self):
        ledger = make_ledger()
        pid = open_voting(ledger)
        ledger.vote(pid, M4, False, 30)
        original = ledger.get_proposal(pid)
        d = original.to_dict()
        assert d["state"] == "VOTING"
        assert d["sponsorTotal"] == "1000000"
        restored = Proposal.from_dict(d)
        assert restored.state == ProposalState.VOTING
        assert restored.votes_against == Decimal(30)
        assert restored.history == original.history
        assert restored.proposal_hash == original.proposal_hash


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════


class TestEvents:

    def test_subscriber_receives_events(self):
        log = EventLog()
        received = []
        log.subscribe(received.append)
        ledger = ProposalLedger(make_directory(), clock=FakeClock(), event_log=log,
                                sponsor_threshold=10)
        pid = ledger.create_proposal(M1, "P1")
        ledger.sponsor(pid, M2, 10)
        assert [type(e) for e in received] == [ProposalCreatedEvent, ProposalStateChangedEvent]
        assert log.for_proposal(pid) == received

    def test_failing_subscriber_does_not_break_ledger(self):
        log = EventLog()

        def broken(event):
            raise RuntimeError("indexer offline")

        log.subscribe(broken)
        ledger = ProposalLedger(make_directory(), clock=FakeClock(), event_log=log)
        pid = ledger.create_proposal(M1, "P1")
        assert ledger.get_proposal_state(pid) == ProposalState.SPONSORING
        assert len(log) == 1

    def test_unsubscribe(self):
        log = EventLog()
        received = []
        log.subscribe(received.append)
        log.unsubscribe(received.append)
        log.emit(ProposalCreatedEvent(proposal_id=1, proposer=M1, timestamp=T0))
        assert received == []

    def test_event_to_dict(self):
        event = ProposalStateChangedEvent(
            proposal_id=3,
            previous_state=ProposalState.SPONSORING,
            new_state=ProposalState.VOTING,
            timestamp=T0,
        )
        assert event.to_dict() == {
            "event": "ProposalStateChanged",
            "proposalId": 3,
            "previousState": "SPONSORING",
            "newState": "VOTING",
            "timestamp": T0,
        }


# ══════════════════════════════════════════════════════════════════════
#  REGISTRY & DIRECTORY
# ══════════════════════════════════════════════════════════════════════


class TestVoteRegistry:

    def test_write_once(self):
        registry = VoteRegistry()
        c = VoteCommitment(proposal_id=1, member=M1, supports=True, amount=Decimal(5))
        registry.set(M1, 1, c)
        assert registry.get(M1, 1) == c
        assert registry.get(M1, 2) is None
        with pytest.raises(AlreadyCommittedError):
            registry.set(M1, 1, c)
        assert len(registry) == 1

    def test_key_must_match_commitment(self):
        registry = VoteRegistry()
        c = VoteCommitment(proposal_id=1, member=M1, supports=True, amount=Decimal(5))
        with pytest.raises(ValueError):
            registry.set(M2, 1, c)

    def test_for_proposal_and_count(self):
        registry = VoteRegistry()
        registry.set(M1, 1, VoteCommitment(1, M1, True, Decimal(1)))
        registry.set(M2, 1, VoteCommitment(1, M2, False, Decimal(2)))
        registry.set(M1, 2, VoteCommitment(2, M1, True, Decimal(3)))
        assert [c.member for c in registry.for_proposal(1)] == [M1, M2]
        assert registry.count(1) == 2
        assert registry.count() == 3

    def test_commitment_is_immutable(self):
        c = VoteCommitment(proposal_id=1, member=M1, supports=True, amount=Decimal(5))
        with pytest.raises(Exception):
            c.amount = Decimal(6)


class TestMembershipDirectory:

    def test_lookups(self):
        directory = make_directory()
        assert directory.is_member(M3)
        assert not directory.is_member(STRANGER)
        assert directory.is_council_member(M1)
        assert not directory.is_council_member(M2)
        assert directory.is_admin(AUDITOR)
        assert not directory.is_member(AUDITOR)

    def test_council_implies_member(self):
        directory = StaticMembershipDirectory(members=["a"], council=["c"])
        assert directory.is_member("c")
        assert directory.members == ["a", "c"]


# ══════════════════════════════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════════════════════════════


class TestConcurrency:

    def test_concurrent_sponsors_cross_threshold_once(self):
        members = [f"t{i:02d}" for i in range(20)]
        ledger = ProposalLedger(
            StaticMembershipDirectory(members=members),
            clock=FakeClock(),
            sponsor_threshold=1_000_000,
        )
        pid = ledger.create_proposal(members[0], "Race")
        barrier = threading.Barrier(len(members))
        accepted = []
        rejected = []

        def worker(member):
            barrier.wait()
            try:
                ledger.sponsor(pid, member, 100_000)
                accepted.append(member)
            except InvalidStateError:
                rejected.append(member)

        threads = [threading.Thread(target=worker, args=(m,)) for m in members]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        p = ledger.get_proposal(pid)
        assert len(accepted) == 10
        assert len(rejected) == 10
        assert p.sponsor_total == 1_000_000
        assert p.state == ProposalState.VOTING
        assert ledger.held_value == Decimal(1_000_000)
        changes = [e for e in ledger.events if isinstance(e, ProposalStateChangedEvent)]
        assert len(changes) == 1
