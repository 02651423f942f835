"""
Local audit log of verification attempts.

Every attempt the oracle evaluates is appended as one JSON line, signed with
the oracle key. The log survives restarts and doubles as the oracle's own
"already settled" check for a milestone, independent of ledger state. If the
file is lost it can be rebuilt from the escrow event log.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

from contracts.milestone_escrow.events import EventRecord, FundsReleased, MilestoneVerified
from oracle.identity import Attestation, verify_attestation

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    VERIFIED = "verified"
    CRITERIA_NOT_MET = "criteria-not-met"
    ALREADY_COMPLETED = "already-completed"
    FETCH_FAILED = "fetch-failed"
    METADATA_INVALID = "metadata-invalid"
    SUBMISSION_FAILED = "submission-failed"


# outcomes after which the milestone is never attempted again
SETTLED_OUTCOMES = (Outcome.VERIFIED, Outcome.ALREADY_COMPLETED)


@dataclass
class AuditRecord:
    """A single verification attempt."""

    timestamp: int
    project_id: int
    milestone_index: int
    outcome: Outcome
    evidence_reference: str = ""
    release_amount: Optional[int] = None
    ledger_version: Optional[int] = None
    signer: Optional[str] = None
    signature: Optional[str] = None
    detail: Optional[str] = None

    @property
    def attestation(self) -> Attestation:
        return Attestation(
            project_id=self.project_id,
            milestone_index=self.milestone_index,
            verified=self.outcome in SETTLED_OUTCOMES,
            evidence_reference=self.evidence_reference,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AuditRecord":
        data = dict(data)
        data["outcome"] = Outcome(data["outcome"])
        return cls(**data)


class AuditLog:
    """
    Append-only JSON-lines log of attempts.

    Args:
        path: Log file; None keeps records in memory only
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

        if self._path is not None and self._path.exists():
            with open(self._path, encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        self._records.append(AuditRecord.from_dict(json.loads(line)))
            logger.info("Loaded %d audit records from %s", len(self._records), self._path)

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record.to_dict()) + "\n")
            self._records.append(record)

    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def records_for(self, project_id: int, milestone_index: int) -> list[AuditRecord]:
        return [
            r for r in self.records()
            if r.project_id == project_id and r.milestone_index == milestone_index
        ]

    def is_settled(self, project_id: int, milestone_index: int) -> bool:
        """True once the milestone was verified (by us or anyone else)."""
        return any(r.outcome in SETTLED_OUTCOMES for r in self.records_for(project_id, milestone_index))

    def latest_since(
        self, project_id: int, milestone_index: int, since: Optional[int] = None
    ) -> Optional[AuditRecord]:
        """Newest attempt at the milestone stamped at or after ``since``; any attempt if None."""
        attempts = self.records_for(project_id, milestone_index)
        if not attempts:
            return None
        latest = attempts[-1]
        if since is not None and latest.timestamp < since:
            return None
        return latest

    def rebuild_from_events(self, events: Iterable[EventRecord]) -> int:
        """
        Add records for verified milestones the log does not know about.

        Args:
            events: Escrow event records, e.g. ``EventLog.records()``

        Returns:
            Number of records added
        """
        releases = {}
        verifications = []
        for record in events:
            event = record.event
            if isinstance(event, FundsReleased):
                releases[(event.project_id, event.milestone_index)] = event.amount
            elif isinstance(event, MilestoneVerified):
                verifications.append((record, event))

        added = 0
        for record, event in verifications:
            if self.is_settled(event.project_id, event.milestone_index):
                continue
            self.append(AuditRecord(
                timestamp=event.timestamp,
                project_id=event.project_id,
                milestone_index=event.milestone_index,
                outcome=Outcome.VERIFIED,
                release_amount=releases.get((event.project_id, event.milestone_index)),
                ledger_version=record.ledger_version,
                detail="rebuilt from event log",
            ))
            added += 1

        if added:
            logger.info("Rebuilt %d audit records from the event log", added)
        return added

    def unverifiable_records(self, address: str) -> list[AuditRecord]:
        """Signed records whose signature does not match ``address``."""
        return [
            r for r in self.records()
            if r.signature is not None
            and (r.signer != address or not verify_attestation(r.attestation, r.signature, address))
        ]
