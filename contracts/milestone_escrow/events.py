"""
Event stream of the Milestone Escrow.

Every committed operation of the contract appends one or more events to the
``EventLog``. The log is ordered by a global sequence number, append-only, can
be replayed from any position, and pushes new records to subscribers through
queues so consumers (the oracle, dashboards) never run inside the contract's
write lock.

Event kinds:
- ProjectCreated(project_id, creator, name, target_amount, timestamp)
- Funded(project_id, funder, amount, total_raised)
- MilestoneVerified(project_id, milestone_index, title, timestamp)
- FundsReleased(project_id, creator, amount, milestone_index)
- OracleUpdated(old_oracle, new_oracle)
- ProjectDeactivated(project_id)

Delivery to subscribers is at-least-once from the consumer's point of view
(a consumer that replays after a restart sees records again), so consumers
deduplicate with ``EventDeduplicator``.
"""

import fcntl
import json
import logging
import os
import queue
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import IO, ClassVar, Iterable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectCreated:
    kind: ClassVar[str] = "ProjectCreated"

    project_id: int
    creator: str
    name: str
    target_amount: int
    timestamp: int


@dataclass(frozen=True)
class Funded:
    kind: ClassVar[str] = "Funded"

    project_id: int
    funder: str
    amount: int
    total_raised: int


@dataclass(frozen=True)
class MilestoneVerified:
    kind: ClassVar[str] = "MilestoneVerified"

    project_id: int
    milestone_index: int
    title: str
    timestamp: int


@dataclass(frozen=True)
class FundsReleased:
    kind: ClassVar[str] = "FundsReleased"

    project_id: int
    creator: str
    amount: int
    milestone_index: int


@dataclass(frozen=True)
class OracleUpdated:
    kind: ClassVar[str] = "OracleUpdated"

    old_oracle: str
    new_oracle: str


@dataclass(frozen=True)
class ProjectDeactivated:
    kind: ClassVar[str] = "ProjectDeactivated"

    project_id: int


EscrowEvent = Union[
    ProjectCreated,
    Funded,
    MilestoneVerified,
    FundsReleased,
    OracleUpdated,
    ProjectDeactivated,
]

EVENT_TYPES = {
    cls.kind: cls
    for cls in (
        ProjectCreated,
        Funded,
        MilestoneVerified,
        FundsReleased,
        OracleUpdated,
        ProjectDeactivated,
    )
}


@dataclass(frozen=True)
class EventRecord:
    """An event together with its position in the log."""

    sequence: int
    ledger_version: int
    event: EscrowEvent

    @property
    def kind(self) -> str:
        return self.event.kind

    @property
    def dedup_key(self) -> tuple:
        """
        Identity of the state transition this record reports.

        Milestone events are keyed by (kind, project, milestone) since each
        milestone completes and pays out once. Project lifecycle events are
        keyed by (kind, project). Funding and oracle rotation can repeat, so
        they are keyed by sequence.
        """
        event = self.event
        if isinstance(event, (MilestoneVerified, FundsReleased)):
            return (event.kind, event.project_id, event.milestone_index)
        if isinstance(event, (ProjectCreated, ProjectDeactivated)):
            return (event.kind, event.project_id)
        return (event.kind, self.sequence)

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "ledger_version": self.ledger_version,
            "kind": self.kind,
            "data": asdict(self.event),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EventRecord":
        event_cls = EVENT_TYPES[data["kind"]]
        return cls(
            sequence=data["sequence"],
            ledger_version=data["ledger_version"],
            event=event_cls(**data["data"]),
        )


class Subscription:
    """Queue-backed feed of new event records for one consumer."""

    def __init__(self, event_log: "EventLog"):
        self._event_log = event_log
        self._queue: "queue.Queue[EventRecord]" = queue.Queue()
        self.closed = False

    def put(self, record: EventRecord) -> None:
        self._queue.put(record)

    def get(self, timeout: Optional[float] = None) -> Optional[EventRecord]:
        """Next record, or None if nothing arrived within ``timeout`` seconds."""
        self._event_log.refresh()
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[EventRecord]:
        self._event_log.refresh()
        records = []
        while True:
            try:
                records.append(self._queue.get_nowait())
            except queue.Empty:
                return records

    def close(self) -> None:
        self._event_log.unsubscribe(self)
        self.closed = True


class EventLog:
    """
    Append-only ordered event log.

    Appends happen in two steps so the ledger can commit state and events
    together: ``stage`` writes the records to the file, then ``publish``
    makes them visible to readers and subscribers, or ``discard`` cuts them
    off the file again. ``append_all`` does both at once.

    Records appended to the file by another process are picked up by
    ``refresh``, which every read calls.

    Args:
        path: Optional JSON-lines file. Existing records are loaded on
            construction and every appended record is written through.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._lock = threading.RLock()
        self._records: list[EventRecord] = []
        self._subscribers: list[Subscription] = []
        self._path = Path(path) if path is not None else None
        self._offset = 0
        self._pending: Optional[tuple[int, int]] = None
        self._stage_lock: Optional[IO[str]] = None

        if self._path is not None and self._path.exists():
            self._read_new()
            logger.info("Loaded %d events from %s", len(self._records), self._path)

    def __len__(self) -> int:
        self.refresh()
        return len(self._records)

    @property
    def last_sequence(self) -> int:
        """Sequence of the newest record, 0 when empty."""
        self.refresh()
        with self._lock:
            return self._records[-1].sequence if self._records else 0

    def append_all(
        self, events: Iterable[EscrowEvent], ledger_version: int
    ) -> list[EventRecord]:
        """
        Append events produced by one committed operation.

        Args:
            events: Events in emission order
            ledger_version: Ledger version the operation committed as

        Returns:
            The new records
        """
        with self._lock:
            staged = self.stage(events, ledger_version)
            self.publish(staged)
        return staged

    def stage(self, events: Iterable[EscrowEvent], ledger_version: int) -> list[EventRecord]:
        """
        Write records to the file without making them visible.

        The caller must follow up with ``publish`` or ``discard``.
        """
        with self._lock:
            if self._pending is not None:
                raise RuntimeError("Event log already has staged records")
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._stage_lock = self._open_lock(fcntl.LOCK_EX)

            try:
                self._publish_foreign(self._read_new(shared_lock=False))
                next_sequence = self._records[-1].sequence + 1 if self._records else 1
                records = [
                    EventRecord(sequence=next_sequence + i, ledger_version=ledger_version, event=e)
                    for i, e in enumerate(events)
                ]
                if self._path is not None and records:
                    with open(self._path, "ab") as f:
                        f.seek(0, os.SEEK_END)
                        start = f.tell()
                        try:
                            for record in records:
                                f.write((json.dumps(record.to_dict()) + "\n").encode("utf-8"))
                            f.flush()
                        except BaseException:
                            f.truncate(start)
                            raise
                        self._pending = (start, f.tell())
            except BaseException:
                self._release_stage_lock()
                raise

            if self._pending is None:
                self._release_stage_lock()
            return records

    def discard(self, records: list[EventRecord]) -> None:
        """Cut staged records off the file."""
        with self._lock:
            if self._pending is None:
                return
            start, _ = self._pending
            try:
                os.truncate(self._path, start)
            finally:
                self._pending = None
                self._release_stage_lock()
            logger.debug("Discarded %d staged events", len(records))

    def publish(self, records: list[EventRecord]) -> None:
        """Make staged records visible and push them to subscribers."""
        with self._lock:
            if self._pending is not None:
                _, self._offset = self._pending
                self._pending = None
                self._release_stage_lock()
            self._records.extend(records)
            subscribers = list(self._subscribers)

        for record in records:
            for subscription in subscribers:
                subscription.put(record)

    def refresh(self) -> list[EventRecord]:
        """Load records other processes appended to the file."""
        with self._lock:
            new_records = self._read_new()
        self._publish_foreign(new_records)
        return new_records

    def records(self, since: int = 0, kind: Optional[str] = None) -> list[EventRecord]:
        """
        Replay records with sequence greater than ``since``.

        Args:
            since: Last sequence the caller has already seen
            kind: Only return records of this event kind
        """
        self.refresh()
        with self._lock:
            selected = [r for r in self._records if r.sequence > since]
        if kind is not None:
            selected = [r for r in selected if r.kind == kind]
        return selected

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _read_new(self, shared_lock: bool = True) -> list[EventRecord]:
        """
        Parse complete lines past the consumed offset. Caller holds ``_lock``.

        Args:
            shared_lock: Take the sidecar lock shared; False when the caller
                already holds it exclusively
        """
        if self._path is None or self._pending is not None or not self._path.exists():
            return []
        lock_file = self._open_lock(fcntl.LOCK_SH) if shared_lock else None
        try:
            with open(self._path, "rb") as f:
                f.seek(self._offset)
                data = f.read()
        except FileNotFoundError:
            return []
        finally:
            if lock_file is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                lock_file.close()

        end = data.rfind(b"\n")
        if end < 0:
            return []
        new_records = [
            EventRecord.from_dict(json.loads(line))
            for line in data[: end + 1].splitlines()
            if line.strip()
        ]
        self._offset += end + 1
        self._records.extend(new_records)
        return new_records

    def _open_lock(self, operation: int) -> IO[str]:
        """Lock the ``.lock`` sidecar; readers share it, a staged append holds it alone."""
        lock_path = self._path.with_suffix(self._path.suffix + ".lock")
        lock_file = open(lock_path, "a+", encoding="utf-8")
        try:
            fcntl.flock(lock_file.fileno(), operation)
        except BaseException:
            lock_file.close()
            raise
        return lock_file

    def _release_stage_lock(self) -> None:
        if self._stage_lock is None:
            return
        fcntl.flock(self._stage_lock.fileno(), fcntl.LOCK_UN)
        self._stage_lock.close()
        self._stage_lock = None

    def _publish_foreign(self, records: list[EventRecord]) -> None:
        if not records:
            return
        with self._lock:
            subscribers = list(self._subscribers)
        for record in records:
            for subscription in subscribers:
                subscription.put(record)

class EventDeduplicator:
    """Drops records whose transition was already seen by this consumer."""

    def __init__(self):
        self._seen_sequences: set[int] = set()
        self._seen_keys: set[tuple] = set()

    def is_new(self, record: EventRecord) -> bool:
        if record.sequence in self._seen_sequences or record.dedup_key in self._seen_keys:
            return False
        self._seen_sequences.add(record.sequence)
        self._seen_keys.add(record.dedup_key)
        return True
