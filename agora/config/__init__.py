"""
Agora Unified Configuration

Loads all sections of agora.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    LedgerConfig,
    LedgerSectionConfig,
    LoggingConfig,
    MembershipConfig,
    StorageConfig,
    load_config,
)

__all__ = [
    "LedgerConfig",
    "LedgerSectionConfig",
    "LoggingConfig",
    "MembershipConfig",
    "StorageConfig",
    "load_config",
]
