"""
Agora TOML Configuration Loader

Loads every section of agora.toml with environment variable overrides.

Environment variable mapping:
    [ledger] time_limit         → AGORA_TIME_LIMIT
    [ledger] sponsor_threshold  → AGORA_SPONSOR_THRESHOLD
    [ledger] vote_threshold     → AGORA_VOTE_THRESHOLD
    [ledger] sponsor_blocks_vote → AGORA_SPONSOR_BLOCKS_VOTE
    [storage] state_file        → AGORA_STATE_FILE
    [logging] level             → AGORA_LOG_LEVEL
    [membership] members        → AGORA_MEMBERS (comma separated)
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    AGORA_CONFIG_FILE,
    AGORA_STATE_FILE,
    SPONSOR_THRESHOLD,
    TIME_LIMIT,
    VOTE_THRESHOLD,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return result


def _seconds(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(result):
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    return result


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class LedgerSectionConfig:
    """[ledger] section."""
    time_limit: float = TIME_LIMIT
    sponsor_threshold: Decimal = SPONSOR_THRESHOLD
    vote_threshold: Decimal = VOTE_THRESHOLD
    sponsor_blocks_vote: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerSectionConfig":
        return cls(
            time_limit=_seconds(data.get("time_limit", TIME_LIMIT), "time_limit"),
            sponsor_threshold=_decimal(
                data.get("sponsor_threshold", SPONSOR_THRESHOLD), "sponsor_threshold"
            ),
            vote_threshold=_decimal(
                data.get("vote_threshold", VOTE_THRESHOLD), "vote_threshold"
            ),
            sponsor_blocks_vote=bool(data.get("sponsor_blocks_vote", False)),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("AGORA_TIME_LIMIT"):
            self.time_limit = _seconds(v, "AGORA_TIME_LIMIT")
        if v := os.environ.get("AGORA_SPONSOR_THRESHOLD"):
            self.sponsor_threshold = _decimal(v, "AGORA_SPONSOR_THRESHOLD")
        if v := os.environ.get("AGORA_VOTE_THRESHOLD"):
            self.vote_threshold = _decimal(v, "AGORA_VOTE_THRESHOLD")
        if v := os.environ.get("AGORA_SPONSOR_BLOCKS_VOTE"):
            self.sponsor_blocks_vote = v.strip().casefold() in ("1", "true", "yes")

    def validate(self) -> None:
        if not math.isfinite(self.time_limit) or self.time_limit <= 0:
            raise ConfigurationError("time_limit must be a finite number > 0")
        for name in ("sponsor_threshold", "vote_threshold"):
            value = _decimal(getattr(self, name), name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be > 0")


@dataclass
class MembershipConfig:
    """[membership] section: the fixed member list."""
    members: List[str] = field(default_factory=list)
    council: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MembershipConfig":
        return cls(
            members=list(data.get("members", [])),
            council=list(data.get("council", [])),
            admins=list(data.get("admins", [])),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("AGORA_MEMBERS"):
            self.members = _split(v)
        if v := os.environ.get("AGORA_COUNCIL"):
            self.council = _split(v)
        if v := os.environ.get("AGORA_ADMINS"):
            self.admins = _split(v)


@dataclass
class StorageConfig:
    """[storage] section."""
    state_file: str = str(AGORA_STATE_FILE)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageConfig":
        return cls(state_file=data.get("state_file", str(AGORA_STATE_FILE)))

    def apply_env(self) -> None:
        if v := os.environ.get("AGORA_STATE_FILE"):
            self.state_file = v


@dataclass
class LoggingConfig:
    """[logging] section."""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(level=str(data.get("level", "INFO")).upper())

    def apply_env(self) -> None:
        if v := os.environ.get("AGORA_LOG_LEVEL"):
            self.level = v.upper()


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass
class LedgerConfig:
    """
    Unified ledger configuration.

    Loads every section of agora.toml and applies environment variable
    overrides.
    """
    ledger: LedgerSectionConfig = field(default_factory=LedgerSectionConfig)
    membership: MembershipConfig = field(default_factory=MembershipConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        """Create LedgerConfig from a parsed TOML dict."""
        return cls(
            ledger=LedgerSectionConfig.from_dict(data.get("ledger", {})),
            membership=MembershipConfig.from_dict(data.get("membership", {})),
            storage=StorageConfig.from_dict(data.get("storage", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "LedgerConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults (with env overrides); a malformed one
        raises ConfigurationError.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            cfg.validate()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        cfg.validate()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.ledger.apply_env()
        self.membership.apply_env()
        self.storage.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        self.ledger.validate()
        if self.logging.level not in _LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "ledger": {
                "time_limit": self.ledger.time_limit,
                "sponsor_threshold": str(self.ledger.sponsor_threshold),
                "vote_threshold": str(self.ledger.vote_threshold),
                "sponsor_blocks_vote": self.ledger.sponsor_blocks_vote,
            },
            "membership": {
                "members": len(self.membership.members),
                "council": len(self.membership.council),
                "admins": len(self.membership.admins),
            },
            "storage": {
                "state_file": self.storage.state_file,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> LedgerConfig:
    """
    Load ledger configuration.

    Resolution order:
        1. Explicit *path* argument
        2. AGORA_CONFIG env var
        3. AGORA_CONFIG_FILE from .env (default ./agora.toml)
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("AGORA_CONFIG", str(AGORA_CONFIG_FILE))

    return LedgerConfig.from_file(path)
