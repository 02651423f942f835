"""
The oracle's view of the escrow ledger.

``LedgerGateway`` is the only place the oracle touches the escrow: reads pass
through, verification submissions are translated into oracle outcomes.

- AlreadyCompletedError passes through unchanged: another submitter got there
  first, which is benign and terminal for that milestone.
- Every other escrow rejection, and any failure to apply the write, becomes
  ``SubmissionError`` with the original exception chained.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from contracts.milestone_escrow.contract import MilestoneEscrow
from contracts.milestone_escrow.errors import AlreadyCompletedError, EscrowError
from contracts.milestone_escrow.events import EventRecord, FundsReleased, Subscription
from contracts.milestone_escrow.state import MilestoneSnapshot, ProjectSnapshot
from oracle.errors import SubmissionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionReceipt:
    """Reference to the state change a verification produced."""

    project_id: int
    milestone_index: int
    release_amount: int
    ledger_version: Optional[int]
    event_sequence: Optional[int]

    @property
    def reference(self) -> str:
        return f"ledger-v{self.ledger_version}/event-{self.event_sequence}"


class LedgerGateway:
    def __init__(self, escrow: MilestoneEscrow):
        self.escrow = escrow

    def get_all_project_ids(self) -> list[int]:
        return self.escrow.get_all_project_ids()

    def get_project(self, project_id: int) -> ProjectSnapshot:
        return self.escrow.get_project(project_id)

    def get_milestones(self, project_id: int) -> tuple[MilestoneSnapshot, ...]:
        return self.escrow.get_milestones(project_id)

    def get_oracle(self) -> str:
        return self.escrow.get_oracle()

    def get_operating_balance(self, address: str) -> int:
        return self.escrow.get_account_balance(address)

    def subscribe(self) -> Subscription:
        return self.escrow.events.subscribe()

    def replay_events(self, since: int = 0) -> list[EventRecord]:
        return self.escrow.events.records(since=since)

    def submit_verification(
        self, project_id: int, milestone_index: int, caller: str
    ) -> SubmissionReceipt:
        """
        Submit a milestone verification as ``caller``.

        Returns:
            Receipt with the released amount and where the release was recorded

        Raises:
            AlreadyCompletedError: The milestone was already verified
            SubmissionError: The ledger rejected or failed to apply the write
        """
        last_sequence = self.escrow.events.last_sequence
        try:
            release = self.escrow.verify_milestone(project_id, milestone_index, caller)
        except AlreadyCompletedError:
            raise
        except EscrowError as exc:
            raise SubmissionError(project_id, milestone_index, f"{exc.code}: {exc}") from exc
        except OSError as exc:
            raise SubmissionError(project_id, milestone_index, f"ledger write failed: {exc}") from exc

        release_record = self._find_release(last_sequence, project_id, milestone_index)
        return SubmissionReceipt(
            project_id=project_id,
            milestone_index=milestone_index,
            release_amount=release,
            ledger_version=release_record.ledger_version if release_record else None,
            event_sequence=release_record.sequence if release_record else None,
        )

    def _find_release(
        self, since: int, project_id: int, milestone_index: int
    ) -> Optional[EventRecord]:
        for record in self.escrow.events.records(since=since, kind=FundsReleased.kind):
            if (record.event.project_id, record.event.milestone_index) == (project_id, milestone_index):
                return record
        return None
