"""
Milestone Escrow Contract for FundTrack

A crowdfunding escrow that holds contributions and releases them to the
project creator milestone by milestone, only when the oracle attests that a
milestone was completed in the real world.

Features:
- Create projects with a funding target and a fixed milestone plan whose
  release percentages sum to 100
- Fund active projects; contributions are tracked per funder
- Oracle-only milestone verification with proportional fund release
- Creator-only project deactivation
- Oracle self-rotation
- Ordered event stream of every state transition

Guarantees:
- Every operation is atomic: it fully applies or raises without changing state
- A milestone completes at most once, so it pays out at most once
- funds_released never exceeds funds_raised

Release amounts are computed from the funds raised at the moment of
verification, not from the target. Milestones may be verified in any order.
"""

import logging
import time
from typing import Callable, Optional, Sequence

from algosdk import encoding

from contracts.milestone_escrow.errors import (
    AlreadyCompletedError,
    InactiveProjectError,
    InsufficientBalanceError,
    InvalidAmountError,
    MilestoneIndexError,
    NotFoundError,
    NothingToReleaseError,
    UnauthorizedError,
    ValidationError,
)
from contracts.milestone_escrow.events import (
    EventLog,
    FundsReleased,
    Funded,
    MilestoneVerified,
    OracleUpdated,
    ProjectCreated,
    ProjectDeactivated,
)
from contracts.milestone_escrow.ledger_store import LedgerStore
from contracts.milestone_escrow.state import (
    LedgerState,
    MilestoneRecord,
    MilestoneSnapshot,
    ProjectRecord,
    ProjectSnapshot,
)

logger = logging.getLogger(__name__)

# Milestone percentages must add up to exactly this
TOTAL_PERCENTAGE = 100


def system_clock() -> int:
    return int(time.time())


def compute_release(funds_raised: int, percentage: int, contract_balance: int) -> int:
    """
    Amount a verified milestone releases to the creator.

    Args:
        funds_raised: Project's funds raised at the moment of verification
        percentage: Milestone release percentage
        contract_balance: Funds currently held by the escrow

    Returns:
        floor(funds_raised * percentage / 100)

    Raises:
        NothingToReleaseError: The amount rounds down to zero
        InsufficientBalanceError: The escrow holds less than the amount
    """
    release = funds_raised * percentage // TOTAL_PERCENTAGE
    if release <= 0:
        raise NothingToReleaseError(funds_raised, percentage)
    if release > contract_balance:
        raise InsufficientBalanceError(release, contract_balance)
    return release


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _require_address(value, role: str) -> str:
    if not isinstance(value, str) or not encoding.is_valid_address(value):
        raise ValidationError(f"{role} must be a valid account address, got {value!r}")
    return value


class MilestoneEscrow:
    """
    Milestone-gated crowdfunding escrow.

    State (see ``LedgerState``):
        - oracle: the only identity allowed to verify milestones
        - projects: project records with their milestone plans
        - contributions: cumulative amount per (project, funder)
        - balance: funds held in escrow
        - payouts: funds released per creator

    Args:
        store: Ledger store holding the authoritative state
        events: Event log receiving committed events
        clock: Returns the current time as Unix seconds
    """

    def __init__(
        self,
        store: LedgerStore,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store
        self.events = events if events is not None else EventLog()
        self._clock = clock or system_clock

    @classmethod
    def deploy(
        cls,
        oracle: str,
        path=None,
        event_log_path=None,
        clock: Optional[Callable[[], int]] = None,
    ) -> "MilestoneEscrow":
        """
        Create a fresh escrow ledger.

        Args:
            oracle: Address of the initial oracle
            path: Optional file to persist the ledger to
            event_log_path: Optional file to persist events to
            clock: Time source

        Returns:
            The new contract
        """
        _require_address(oracle, "Oracle")
        store = LedgerStore.initialize(oracle, path)
        return cls(store, EventLog(event_log_path), clock)

    @property
    def ledger_version(self) -> int:
        return self._store.version

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        description: str,
        target_amount: int,
        milestone_titles: Sequence[str],
        milestone_percentages: Sequence[int],
        creator: str,
    ) -> int:
        """
        Create a new project with a fixed milestone plan.

        Args:
            name: Project name (non-empty)
            description: Project description
            target_amount: Funding target in micro-units (positive)
            milestone_titles: One title per milestone
            milestone_percentages: Release percentage per milestone, summing to 100
            creator: Address that receives released funds and may deactivate

        Returns:
            Project ID
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Project name must not be empty")
        if not isinstance(description, str):
            raise ValidationError("Description must be a string")
        if not _is_positive_int(target_amount):
            raise ValidationError(f"Target amount must be a positive integer, got {target_amount!r}")
        _require_address(creator, "Creator")

        titles = list(milestone_titles)
        percentages = list(milestone_percentages)
        if not titles or len(titles) != len(percentages):
            raise ValidationError(
                "Milestone titles and percentages must be non-empty and of equal length"
            )
        for title in titles:
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("Milestone titles must not be empty")
        for percentage in percentages:
            if not _is_positive_int(percentage) or percentage > TOTAL_PERCENTAGE:
                raise ValidationError(
                    f"Milestone percentage must be an integer from 1 to 100, got {percentage!r}"
                )
        if sum(percentages) != TOTAL_PERCENTAGE:
            raise ValidationError(
                f"Milestone percentages must sum to 100, got {sum(percentages)}"
            )

        now = self._clock()
        with self._store.transaction(self.events) as txn:
            state = txn.state
            project_id = state.next_project_id
            state.next_project_id = project_id + 1

            state.projects[project_id] = ProjectRecord(
                id=project_id,
                name=name,
                description=description,
                creator=creator,
                target_amount=target_amount,
                created_at=now,
                milestones=[MilestoneRecord(t, p) for t, p in zip(titles, percentages)],
            )
            state.contributions[project_id] = {}

            txn.emit(ProjectCreated(project_id, creator, name, target_amount, now))

        logger.info("Project %d created by %s (target %d)", project_id, creator, target_amount)
        return project_id

    def fund_project(self, project_id: int, amount: int, funder: str) -> int:
        """
        Contribute to an active project.

        Args:
            project_id: ID of the project
            amount: Contribution in micro-units (positive)
            funder: Contributor address

        Returns:
            Project's new cumulative funds raised
        """
        with self._store.transaction(self.events) as txn:
            state = txn.state
            project = self._require_active(state, project_id)
            if not _is_positive_int(amount):
                raise InvalidAmountError(amount)
            _require_address(funder, "Funder")

            # Update raised amount and the funder's running total
            project.funds_raised += amount
            funders = state.contributions.setdefault(project_id, {})
            funders[funder] = funders.get(funder, 0) + amount
            state.balance += amount

            total_raised = project.funds_raised
            txn.emit(Funded(project_id, funder, amount, total_raised))

        logger.info("Project %d funded %d by %s (raised %d)", project_id, amount, funder, total_raised)
        return total_raised

    def verify_milestone(self, project_id: int, milestone_index: int, caller: str) -> int:
        """
        Mark a milestone complete and release its share to the creator.
        Only the oracle can verify milestones.

        Args:
            project_id: ID of the project
            milestone_index: Index of the milestone
            caller: Address submitting the verification

        Returns:
            Amount released
        """
        now = self._clock()
        with self._store.transaction(self.events) as txn:
            state = txn.state
            if caller != state.oracle:
                raise UnauthorizedError(caller, "verify milestones")

            project = self._require_active(state, project_id)
            milestone = self._require_milestone(project, milestone_index)

            # Check not already completed
            if milestone.completed:
                raise AlreadyCompletedError(project_id, milestone_index)

            release = self._complete_and_release(txn, project, milestone_index, now)

        logger.info(
            "Milestone %d of project %d verified, released %d to %s",
            milestone_index, project_id, release, project.creator,
        )
        return release

    def deactivate_project(self, project_id: int, caller: str) -> None:
        """
        Permanently deactivate a project.
        Only the project creator can deactivate. Funds still held for the
        project are not refunded.

        Args:
            project_id: ID of the project
            caller: Address requesting deactivation
        """
        with self._store.transaction(self.events) as txn:
            project = self._require_project(txn.state, project_id)
            if caller != project.creator:
                raise UnauthorizedError(caller, f"deactivate project {project_id}")
            if not project.active:
                raise InactiveProjectError(project_id)

            project.active = False
            undisbursed = project.funds_raised - project.funds_released
            txn.emit(ProjectDeactivated(project_id))

        if undisbursed > 0:
            logger.warning(
                "Project %d deactivated with %d undisbursed funds left in escrow",
                project_id, undisbursed,
            )
        else:
            logger.info("Project %d deactivated", project_id)

    def update_oracle(self, new_oracle: str, caller: str) -> None:
        """
        Hand the oracle role to a new identity.
        Only the current oracle can rotate itself.

        Args:
            new_oracle: Address of the new oracle
            caller: Address requesting the rotation
        """
        with self._store.transaction(self.events) as txn:
            state = txn.state
            if caller != state.oracle:
                raise UnauthorizedError(caller, "update the oracle")
            _require_address(new_oracle, "Oracle")

            old_oracle = state.oracle
            state.oracle = new_oracle
            txn.emit(OracleUpdated(old_oracle, new_oracle))

        logger.info("Oracle rotated from %s to %s", old_oracle, new_oracle)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_project(self, project_id: int) -> ProjectSnapshot:
        return ProjectSnapshot.of(self._require_project(self._store.state, project_id))

    def get_milestones(self, project_id: int) -> tuple[MilestoneSnapshot, ...]:
        return self.get_project(project_id).milestones

    def get_contribution(self, project_id: int, funder: str) -> int:
        """
        Get a funder's total contribution to a project.

        Returns:
            Cumulative amount, 0 if the funder never contributed
        """
        state = self._store.state
        self._require_project(state, project_id)
        return state.contributions.get(project_id, {}).get(funder, 0)

    def get_all_project_ids(self) -> list[int]:
        return sorted(self._store.state.projects)

    def get_project_count(self) -> int:
        return self._store.state.next_project_id

    def get_contract_balance(self) -> int:
        return self._store.state.balance

    def get_oracle(self) -> str:
        return self._store.state.oracle

    def get_account_balance(self, address: str) -> int:
        """Total released to ``address`` by the escrow."""
        return self._store.state.payouts.get(address, 0)

    def get_undisbursed_balance(self, project_id: int) -> int:
        return self.get_project(project_id).undisbursed

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _require_project(state: LedgerState, project_id: int) -> ProjectRecord:
        project = state.projects.get(project_id)
        if project is None:
            raise NotFoundError(project_id)
        return project

    @classmethod
    def _require_active(cls, state: LedgerState, project_id: int) -> ProjectRecord:
        project = cls._require_project(state, project_id)
        if not project.active:
            raise InactiveProjectError(project_id)
        return project

    @staticmethod
    def _require_milestone(project: ProjectRecord, milestone_index: int) -> MilestoneRecord:
        if (
            not isinstance(milestone_index, int)
            or isinstance(milestone_index, bool)
            or not 0 <= milestone_index < len(project.milestones)
        ):
            raise MilestoneIndexError(project.id, milestone_index, len(project.milestones))
        return project.milestones[milestone_index]

    @staticmethod
    def _complete_and_release(txn, project: ProjectRecord, milestone_index: int, now: int) -> int:
        state = txn.state
        milestone = project.milestones[milestone_index]

        milestone.completed = True
        milestone.completed_at = now
        txn.emit(MilestoneVerified(project.id, milestone_index, milestone.title, now))

        release = compute_release(project.funds_raised, milestone.percentage, state.balance)
        # funds_released <= funds_raised
        if project.funds_released + release > project.funds_raised:
            raise InsufficientBalanceError(release, project.funds_raised - project.funds_released)

        project.funds_released += release
        state.balance -= release
        state.payouts[project.creator] = state.payouts.get(project.creator, 0) + release
        txn.emit(FundsReleased(project.id, project.creator, release, milestone_index))
        return release
