"""
Agora Exceptions

Exception classes shared outside the governance core. Governance failures
live in agora.governance.proposals.
"""


class AgoraException(Exception):
    """Base exception for Agora."""
    pass


class ConfigurationError(AgoraException):
    """Configuration error."""
    pass


class StorageError(AgoraException):
    """Ledger state could not be read or written."""
    pass
