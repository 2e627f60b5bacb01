"""
Membership Directory

The ledger asks two questions of its directory: is this identity an
eligible member, and is it a council member. The directory is injected so
that a fixed list can later be replaced by an authoritative external
lookup without touching the ledger.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List


class MembershipDirectory(ABC):
    """Read-only membership lookup consumed by the ledger."""

    @abstractmethod
    def is_member(self, identity: str) -> bool:
        ...

    @abstractmethod
    def is_council_member(self, identity: str) -> bool:
        ...

    def is_admin(self, identity: str) -> bool:
        """Privileged identities allowed to read any member's commitment."""
        return False


class StaticMembershipDirectory(MembershipDirectory):
    """
    Directory backed by fixed lists.

    Council members are always members. Administrators need not be members;
    they only gain read access to commitments.
    """

    def __init__(
        self,
        members: Iterable[str] = (),
        council: Iterable[str] = (),
        admins: Iterable[str] = (),
    ):
        self._council = frozenset(council)
        self._members = frozenset(members) | self._council
        self._admins = frozenset(admins)

    @classmethod
    def from_config(cls, config) -> "StaticMembershipDirectory":
        """Build from a MembershipConfig section."""
        return cls(
            members=config.members,
            council=config.council,
            admins=config.admins,
        )

    def is_member(self, identity: str) -> bool:
        return identity in self._members

    def is_council_member(self, identity: str) -> bool:
        return identity in self._council

    def is_admin(self, identity: str) -> bool:
        return identity in self._admins

    @property
    def members(self) -> List[str]:
        return sorted(self._members)

    @property
    def council(self) -> List[str]:
        return sorted(self._council)

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return (
            f"<StaticMembershipDirectory members={len(self._members)} "
            f"council={len(self._council)} admins={len(self._admins)}>"
        )
