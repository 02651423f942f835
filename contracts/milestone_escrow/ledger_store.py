"""
Durable, versioned store behind the Milestone Escrow.

Writes go through ``LedgerStore.transaction()``: the store takes its write
lock, hands out a deep copy of the committed state, and only if the block
finishes without raising does it bump the version, persist the copy and swap
it in as the new committed state.

Commit order:
1. events emitted during the block are written to the event log file
   (staged, not yet visible to readers)
2. the new state is written to the ledger file
3. the state is swapped in and the staged events are published

A failure in step 1 or 2 aborts the commit and withdraws the staged events,
so the ledger and its event stream never disagree.

A file-backed ledger may be shared by several processes (the oracle, operator
scripts). Every transaction holds an exclusive lock on a ``.lock`` sidecar
file and re-reads the ledger file before copying, so a commit always builds
on the newest version on disk. Reads pick up newer versions when the file is
replaced (new inode, mtime or size).

Committed states are never mutated after the swap, so readers always see a
fully applied version.
"""

import copy
import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from contracts.milestone_escrow.events import EscrowEvent, EventLog
from contracts.milestone_escrow.state import LedgerState

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class Transaction:
    """Working copy of the ledger plus the events it will publish on commit."""

    def __init__(self, state: LedgerState):
        self.state = state
        self.events: list[EscrowEvent] = []

    def emit(self, event: EscrowEvent) -> None:
        self.events.append(event)


class LedgerStore:
    """
    Owner of the committed ``LedgerState``.

    Args:
        state: Initial committed state
        path: Optional JSON file the state is written to after every commit
    """

    def __init__(self, state: LedgerState, path: Optional[Union[str, Path]] = None):
        self._state = state
        self._path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._stamp: Optional[tuple] = None

    @classmethod
    def initialize(cls, oracle: str, path: Optional[Union[str, Path]] = None) -> "LedgerStore":
        """Create an empty ledger with its first oracle identity."""
        store = cls(LedgerState(oracle=oracle), path)
        if store._path is not None:
            with store._file_lock():
                store._persist(store._state)
        return store

    @classmethod
    def load(cls, path: Union[str, Path]) -> "LedgerStore":
        path = Path(path)
        store = cls(cls._read(path), path)
        store._stamp = store._file_stamp()
        logger.info("Loaded ledger version %d from %s", store.version, path)
        return store

    @classmethod
    def open(cls, path: Union[str, Path], oracle: Optional[str] = None) -> "LedgerStore":
        """Load the ledger at ``path``, creating it for ``oracle`` if missing."""
        if Path(path).exists():
            return cls.load(path)
        if oracle is None:
            raise FileNotFoundError(f"No ledger at {path} and no oracle to initialize one")
        return cls.initialize(oracle, path)

    @property
    def state(self) -> LedgerState:
        """Current committed state. Callers must not mutate it."""
        if self._path is not None:
            self._refresh()
        return self._state

    @property
    def version(self) -> int:
        return self.state.version

    @contextmanager
    def transaction(self, event_log: Optional[EventLog] = None) -> Iterator[Transaction]:
        """
        Run a block against a private copy of the ledger.

        Args:
            event_log: Log that receives the events emitted in the block

        Yields:
            Transaction whose state may be freely mutated
        """
        with self._lock, self._file_lock():
            if self._path is not None:
                self._refresh(force=True)

            txn = Transaction(copy.deepcopy(self._state))
            try:
                yield txn
            except Exception as exc:
                logger.debug("Transaction on version %d rolled back: %r", self._state.version, exc)
                raise

            txn.state.version = self._state.version + 1
            staged = []
            if event_log is not None and txn.events:
                staged = event_log.stage(txn.events, txn.state.version)
            try:
                if self._path is not None:
                    self._persist(txn.state)
            except BaseException:
                if staged:
                    event_log.discard(staged)
                raise

            self._state = txn.state
            if staged:
                event_log.publish(staged)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _read(path: Path) -> LedgerState:
        with open(path, encoding="utf-8") as f:
            return LedgerState.from_dict(json.load(f))

    def _refresh(self, force: bool = False) -> None:
        """Adopt the version on disk if another writer committed past ours."""
        try:
            stamp = self._file_stamp()
        except FileNotFoundError:
            return
        if stamp == self._stamp and not force:
            return

        # a reader never waits on a local writer; the writer refreshes itself
        if not self._lock.acquire(blocking=False):
            return
        try:
            state = self._read(self._path)
            self._stamp = stamp
            if state.version > self._state.version:
                logger.info(
                    "Ledger %s advanced from version %d to %d on disk",
                    self._path, self._state.version, state.version,
                )
                self._state = state
        finally:
            self._lock.release()

    def _file_stamp(self) -> tuple:
        st = self._path.stat()
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        if self._path is None:
            yield
            return

        lock_path = self._path.with_suffix(self._path.suffix + LOCK_SUFFIX)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+", encoding="utf-8") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _persist(self, state: LedgerState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp_path, self._path)
        self._stamp = self._file_stamp()
