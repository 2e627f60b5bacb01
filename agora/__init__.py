"""
Agora Funded Proposal Ledger

Core imports are lazily loaded so that importing the package does not
configure logging or read configuration. For direct module access, import
from submodules:

    from agora.governance import ProposalLedger, StaticMembershipDirectory
    from agora.config import load_config
    from agora.storage import JSONLedgerStore
"""

__version__ = "1.0.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'ProposalLedger':
        from .governance import ProposalLedger
        return ProposalLedger
    elif name == 'StaticMembershipDirectory':
        from .governance import StaticMembershipDirectory
        return StaticMembershipDirectory
    elif name == 'GovernanceError':
        from .governance import GovernanceError
        return GovernanceError
    raise AttributeError(f"module 'agora' has no attribute {name!r}")

__all__ = ['ProposalLedger', 'StaticMembershipDirectory', 'GovernanceError', '__version__']
