"""
Agora Ledger State Store

Persists the ledger's state surface (proposal table, ordered id list,
commitment table) as one JSON document so that a ledger survives process
restarts and can be inspected by auditors.

Several processes may share one state file. A sidecar ``<state>.lock`` file
serializes them, and every document carries a revision number so that a
ledger loaded before another writer's save can no longer overwrite it.

Usage:
    store = JSONLedgerStore("agora_state.json")
    with store.lock():
        ledger = store.load(directory)    # fresh ledger if file is absent
        ...
        store.save(ledger)
"""

import json
import logging
import os
import tempfile
import threading
import time
import weakref
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .exceptions import ConfigurationError, StorageError
from .governance.ledger import ProposalLedger
from .governance.membership import MembershipDirectory

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
LOCK_TIMEOUT = 10.0
LOCK_POLL_INTERVAL = 0.05


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class StateFileLock:
    """
    Inter-process lock backed by an atomically created PID file.

    Re-entrant within one lock object: nested ``with`` blocks in the same
    thread only create the file once. A lock file left by a dead process,
    or one that does not hold a PID, is reclaimed.
    """

    def __init__(self, path, timeout: float = LOCK_TIMEOUT,
                 poll_interval: float = LOCK_POLL_INTERVAL):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._thread_lock = threading.RLock()
        self._depth = 0

    @property
    def is_held(self) -> bool:
        return self._depth > 0

    def _try_create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return True

    def _reclaim_if_stale(self) -> None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        if not raw:
            # Owner created the file but has not written its PID yet
            return
        try:
            pid = int(raw)
        except ValueError:
            pid = -1
        if not _pid_alive(pid):
            logger.warning("Removing stale ledger lock %s (owner %s)", self.path, raw)
            self.path.unlink(missing_ok=True)

    def acquire(self) -> None:
        self._thread_lock.acquire()
        if self._depth > 0:
            self._depth += 1
            return
        deadline = time.monotonic() + self.timeout
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            while not self._try_create():
                self._reclaim_if_stale()
                if time.monotonic() >= deadline:
                    raise StorageError(
                        f"Timed out after {self.timeout}s waiting for ledger lock {self.path}"
                    )
                time.sleep(self.poll_interval)
        except StorageError:
            self._thread_lock.release()
            raise
        except OSError as e:
            self._thread_lock.release()
            raise StorageError(f"Failed to acquire ledger lock {self.path}: {e}") from e
        self._depth = 1

    def release(self) -> None:
        if self._depth == 0:
            raise RuntimeError(f"Ledger lock {self.path} is not held")
        self._depth -= 1
        if self._depth == 0:
            self.path.unlink(missing_ok=True)
        self._thread_lock.release()

    def __enter__(self) -> "StateFileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class JSONLedgerStore:
    """
    File-backed ledger store.

    Writes go to a temporary file in the same directory which then replaces
    the target, so a crash never leaves a half-written state file.
    """

    def __init__(self, path, lock_timeout: float = LOCK_TIMEOUT):
        self.path = Path(path)
        self._lock = StateFileLock(
            self.path.with_name(self.path.name + ".lock"), timeout=lock_timeout
        )
        # Revision each ledger was loaded at (or last saved as)
        self._revisions: "weakref.WeakKeyDictionary[ProposalLedger, int]" = (
            weakref.WeakKeyDictionary()
        )

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def lock(self) -> StateFileLock:
        """Lock to hold across a whole load → operate → save transaction."""
        return self._lock

    def _read_document(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read ledger state from {self.path}: {e}") from e
        if not isinstance(document, dict):
            raise StorageError(f"Corrupt ledger state in {self.path}: not a JSON object")
        version = document.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StorageError(
                f"Unsupported ledger state version {version!r} in {self.path}"
            )
        return document

    def save(self, ledger: ProposalLedger) -> int:
        """
        Write *ledger* and return the new revision.

        Raises StorageError if the file was written by someone else since
        *ledger* was loaded from it.
        """
        with self._lock:
            current = self._read_document()
            on_disk = 0 if current is None else int(current.get("revision", 0))
            expected = self._revisions.get(ledger, 0)
            if on_disk != expected:
                raise StorageError(
                    f"Ledger state in {self.path} changed since it was loaded "
                    f"(revision {on_disk}, expected {expected}); reload and retry"
                )

            revision = expected + 1
            document: Dict[str, Any] = {
                "version": STATE_FORMAT_VERSION,
                "revision": revision,
                "ledger": ledger.to_dict(),
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as e:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise StorageError(f"Failed to write ledger state to {self.path}: {e}") from e
            self._revisions[ledger] = revision
        logger.debug(
            "Ledger state saved to %s (revision %d, %d proposals)",
            self.path, revision, ledger.proposal_count,
        )
        return revision

    def load(
        self,
        directory: MembershipDirectory,
        clock: Optional[Callable[[], float]] = None,
        **ledger_kwargs,
    ) -> ProposalLedger:
        """
        Restore the ledger from disk.

        When the file does not exist a new ledger is built from
        *ledger_kwargs* (time_limit, thresholds, ...).
        """
        with self._lock:
            document = self._read_document()
            if document is None:
                logger.info("No ledger state at %s, starting empty ledger", self.path)
                ledger = ProposalLedger(directory, clock=clock, **ledger_kwargs)
                self._revisions[ledger] = 0
                return ledger

            try:
                revision = int(document.get("revision", 0))
                ledger = ProposalLedger.from_dict(document["ledger"], directory, clock=clock)
            except (KeyError, ValueError, TypeError, ArithmeticError, ConfigurationError) as e:
                raise StorageError(f"Corrupt ledger state in {self.path}: {e}") from e
            self._revisions[ledger] = revision
        logger.debug(
            "Ledger state loaded from %s (revision %d, %d proposals)",
            self.path, revision, ledger.proposal_count,
        )
        return ledger
