"""
Per-Member Vote Registry

Records, per proposal and per member, the one commitment that member has
made. A commitment is written once and never updated or removed; its
presence is what keeps a member from participating twice.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from ..logger import get_logger
from .proposals import AlreadyCommittedError

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  COMMITMENT DATA
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VoteCommitment:
    """A member's stance and contributed value for one proposal."""
    proposal_id: int
    member: str
    supports: bool
    amount: Decimal
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "member": self.member,
            "supports": self.supports,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteCommitment":
        return cls(
            proposal_id=data["proposalId"],
            member=data["member"],
            supports=bool(data["supports"]),
            amount=Decimal(data["amount"]),
            timestamp=data.get("timestamp", 0.0),
        )


# ══════════════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════════════

class VoteRegistry:
    """
    Write-once store of commitments keyed by (member, proposal_id).

    The registry is owned by the ledger; nothing else writes to it.
    """

    def __init__(self):
        self._commitments: Dict[Tuple[str, int], VoteCommitment] = {}

    def get(self, member: str, proposal_id: int) -> Optional[VoteCommitment]:
        return self._commitments.get((member, proposal_id))

    def has_committed(self, member: str, proposal_id: int) -> bool:
        return (member, proposal_id) in self._commitments

    def set(self, member: str, proposal_id: int, commitment: VoteCommitment) -> None:
        """Store *commitment*; a second write for the same key is rejected."""
        key = (member, proposal_id)
        if key in self._commitments:
            raise AlreadyCommittedError(
                f"{member} already committed to proposal #{proposal_id}",
                refund=commitment.amount,
            )
        if commitment.member != member or commitment.proposal_id != proposal_id:
            raise ValueError(
                f"Commitment for ({commitment.member}, #{commitment.proposal_id}) "
                f"stored under ({member}, #{proposal_id})"
            )
        self._commitments[key] = commitment
        logger.debug(
            f"Commitment: {member} → #{proposal_id} "
            f"supports={commitment.supports} amount={commitment.amount}"
        )

    def for_proposal(self, proposal_id: int) -> List[VoteCommitment]:
        """All commitments for a proposal, in write order."""
        return [c for (_, pid), c in self._commitments.items() if pid == proposal_id]

    def count(self, proposal_id: Optional[int] = None) -> int:
        if proposal_id is None:
            return len(self._commitments)
        return len(self.for_proposal(proposal_id))

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        # member → {proposal_id: commitment}
        out: Dict[str, Dict[str, Any]] = {}
        for (member, pid), c in self._commitments.items():
            out.setdefault(member, {})[str(pid)] = c.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteRegistry":
        registry = cls()
        for member, by_proposal in data.items():
            for pid, raw in by_proposal.items():
                registry.set(member, int(pid), VoteCommitment.from_dict(raw))
        return registry

    def __len__(self) -> int:
        return len(self._commitments)

    def __repr__(self) -> str:
        return f"<VoteRegistry commitments={len(self._commitments)}>"
