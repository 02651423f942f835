"""
Tests for Milestone Escrow Contract

Tests cover:
- Project creation and milestone plan validation
- Funding and per-funder contributions
- Oracle-only milestone verification and fund release
- Release amounts computed from funds raised at verification time
- Creator-only deactivation
- Oracle rotation
- Atomicity of rejected operations
- One release per milestone under concurrent verification
"""

import threading

import pytest

from contracts.milestone_escrow.contract import MilestoneEscrow, compute_release
from contracts.milestone_escrow.errors import (
    AlreadyCompletedError,
    AuthorizationError,
    InactiveProjectError,
    InsufficientBalanceError,
    InvalidAmountError,
    MilestoneIndexError,
    NotFoundError,
    NothingToReleaseError,
    StateConflictError,
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
from conftest import new_address


def create_project(escrow, creator, percentages=(40, 30, 30), target=10_000):
    return escrow.create_project(
        name="Solar Farm Kigali",
        description="Community solar installation",
        target_amount=target,
        milestone_titles=[f"Phase {i + 1}" for i in range(len(percentages))],
        milestone_percentages=list(percentages),
        creator=creator,
    )


class TestComputeRelease:
    """Test suite for the release amount rule."""

    def test_exact_percentage(self):
        """Test 30% of 10000 releases 3000."""
        assert compute_release(10_000, 30, 10_000) == 3000

    def test_floors_instead_of_rounding(self):
        """Test 30% of 10001 releases 3000, not 3000.3 rounded."""
        assert compute_release(10_001, 30, 10_001) == 3000

    def test_zero_release_rejected(self):
        """Test a release that floors to zero is rejected."""
        with pytest.raises(NothingToReleaseError):
            compute_release(3, 30, 100)

    def test_release_above_balance_rejected(self):
        """Test a release larger than the escrow balance is rejected."""
        with pytest.raises(InsufficientBalanceError) as exc_info:
            compute_release(10_000, 30, 2999)

        assert exc_info.value.requested == 3000
        assert exc_info.value.available == 2999


class TestCreateProject:
    """Test suite for project creation."""

    def test_create_project(self, escrow: MilestoneEscrow, creator, clock):
        """Test creating a project with a valid milestone plan."""
        # Act
        project_id = create_project(escrow, creator)

        # Assert
        assert project_id == 0
        project = escrow.get_project(project_id)
        assert project.name == "Solar Farm Kigali"
        assert project.creator == creator
        assert project.target_amount == 10_000
        assert project.funds_raised == 0
        assert project.funds_released == 0
        assert project.active
        assert project.created_at == clock.now
        assert [m.percentage for m in project.milestones] == [40, 30, 30]
        assert not any(m.completed for m in project.milestones)

    def test_project_ids_are_sequential(self, escrow: MilestoneEscrow, creator):
        """Test each project gets the next id."""
        # Act
        ids = [create_project(escrow, creator) for _ in range(3)]

        # Assert
        assert ids == [0, 1, 2]
        assert escrow.get_all_project_ids() == [0, 1, 2]
        assert escrow.get_project_count() == 3

    def test_emits_project_created(self, escrow: MilestoneEscrow, creator, clock):
        """Test creation emits ProjectCreated."""
        # Act
        project_id = create_project(escrow, creator)

        # Assert
        [record] = escrow.events.records()
        assert record.event == ProjectCreated(
            project_id, creator, "Solar Farm Kigali", 10_000, clock.now
        )

    @pytest.mark.parametrize("percentages", [(40, 30), (50, 30, 30), (100, 0), (101, -1)])
    def test_percentages_must_sum_to_100(self, escrow: MilestoneEscrow, creator, percentages):
        """Test a plan not summing to 100 is rejected without creating anything."""
        # Act & Assert
        with pytest.raises(ValidationError):
            create_project(escrow, creator, percentages=percentages)

        assert escrow.get_project_count() == 0
        assert escrow.get_all_project_ids() == []
        assert len(escrow.events) == 0

    def test_titles_and_percentages_must_match(self, escrow: MilestoneEscrow, creator):
        """Test mismatched milestone lists are rejected."""
        # Act & Assert
        with pytest.raises(ValidationError, match="equal length"):
            escrow.create_project("P", "", 100, ["Only one"], [50, 50], creator)

    def test_needs_at_least_one_milestone(self, escrow: MilestoneEscrow, creator):
        """Test an empty milestone plan is rejected."""
        with pytest.raises(ValidationError):
            escrow.create_project("P", "", 100, [], [], creator)

    def test_name_must_not_be_empty(self, escrow: MilestoneEscrow, creator):
        """Test an empty name is rejected."""
        with pytest.raises(ValidationError, match="name"):
            escrow.create_project("  ", "", 100, ["All"], [100], creator)

    @pytest.mark.parametrize("target", [0, -5, 1.5, True])
    def test_target_must_be_positive(self, escrow: MilestoneEscrow, creator, target):
        """Test a non-positive target is rejected."""
        with pytest.raises(ValidationError, match="Target amount"):
            escrow.create_project("P", "", target, ["All"], [100], creator)

    def test_creator_must_be_an_address(self, escrow: MilestoneEscrow):
        """Test an invalid creator address is rejected."""
        with pytest.raises(ValidationError, match="Creator"):
            escrow.create_project("P", "", 100, ["All"], [100], "not-an-address")


class TestFundProject:
    """Test suite for funding."""

    def test_fund_project(self, escrow: MilestoneEscrow, creator, funder):
        """Test funding increases raised amount, contribution and balance."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act
        total = escrow.fund_project(project_id, 1000, funder)

        # Assert
        assert total == 1000
        assert escrow.get_project(project_id).funds_raised == 1000
        assert escrow.get_contribution(project_id, funder) == 1000
        assert escrow.get_contract_balance() == 1000

    def test_contributions_accumulate_per_funder(self, escrow: MilestoneEscrow, creator, funder):
        """Test raised equals the sum of accepted amounts, per funder too."""
        # Arrange
        project_id = create_project(escrow, creator)
        other = new_address()

        # Act
        escrow.fund_project(project_id, 100, funder)
        escrow.fund_project(project_id, 250, other)
        escrow.fund_project(project_id, 50, funder)

        # Assert
        assert escrow.get_project(project_id).funds_raised == 400
        assert escrow.get_contribution(project_id, funder) == 150
        assert escrow.get_contribution(project_id, other) == 250

    def test_contribution_of_non_funder_is_zero(self, escrow: MilestoneEscrow, creator):
        """Test a funder who never contributed has contribution 0."""
        project_id = create_project(escrow, creator)

        assert escrow.get_contribution(project_id, new_address()) == 0

    def test_emits_funded_with_running_total(self, escrow: MilestoneEscrow, creator, funder):
        """Test Funded carries the new total raised."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act
        escrow.fund_project(project_id, 300, funder)
        escrow.fund_project(project_id, 200, funder)

        # Assert
        funded = [r.event for r in escrow.events.records(kind=Funded.kind)]
        assert funded == [
            Funded(project_id, funder, 300, 300),
            Funded(project_id, funder, 200, 500),
        ]

    @pytest.mark.parametrize("amount", [0, -100, 10.5, True, "100"])
    def test_invalid_amount(self, escrow: MilestoneEscrow, creator, funder, amount):
        """Test non-positive or non-integer amounts are rejected."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act & Assert
        with pytest.raises(InvalidAmountError):
            escrow.fund_project(project_id, amount, funder)

        assert escrow.get_project(project_id).funds_raised == 0
        assert escrow.get_contract_balance() == 0

    def test_unknown_project(self, escrow: MilestoneEscrow, funder):
        """Test funding an unknown project fails with NotFoundError."""
        with pytest.raises(NotFoundError, match="does not exist"):
            escrow.fund_project(7, 100, funder)

    def test_inactive_project(self, escrow: MilestoneEscrow, creator, funder):
        """Test funding a deactivated project is rejected."""
        # Arrange
        project_id = create_project(escrow, creator)
        escrow.deactivate_project(project_id, creator)

        # Act & Assert
        with pytest.raises(InactiveProjectError):
            escrow.fund_project(project_id, 100, funder)


class TestVerifyMilestone:
    """Test suite for milestone verification and release."""

    @pytest.fixture
    def funded_project(self, escrow: MilestoneEscrow, creator, funder) -> int:
        project_id = create_project(escrow, creator)
        escrow.fund_project(project_id, 1000, funder)
        return project_id

    def test_verify_milestone(self, escrow: MilestoneEscrow, oracle, creator, funded_project, clock):
        """Test verification completes the milestone and pays the creator."""
        # Arrange
        clock.advance(3600)

        # Act
        release = escrow.verify_milestone(funded_project, 0, oracle)

        # Assert
        assert release == 400
        project = escrow.get_project(funded_project)
        assert project.funds_released == 400
        assert project.milestones[0].completed
        assert project.milestones[0].completed_at == clock.now
        assert escrow.get_contract_balance() == 600
        assert escrow.get_account_balance(creator) == 400

    def test_emits_verified_then_released(self, escrow: MilestoneEscrow, oracle, creator, funded_project, clock):
        """Test MilestoneVerified is followed by FundsReleased."""
        # Act
        escrow.verify_milestone(funded_project, 0, oracle)

        # Assert
        verified, released = [r.event for r in escrow.events.records()][-2:]
        assert verified == MilestoneVerified(funded_project, 0, "Phase 1", clock.now)
        assert released == FundsReleased(funded_project, creator, 400, 0)

    def test_only_oracle_can_verify(self, escrow: MilestoneEscrow, creator, funded_project):
        """Test a non-oracle caller is rejected without state change."""
        # Arrange
        version = escrow.ledger_version
        events = len(escrow.events)

        # Act & Assert
        with pytest.raises(AuthorizationError):
            escrow.verify_milestone(funded_project, 0, creator)

        assert escrow.ledger_version == version
        assert len(escrow.events) == events
        assert not escrow.get_milestones(funded_project)[0].completed

    def test_already_completed(self, escrow: MilestoneEscrow, oracle, funded_project):
        """Test re-verifying a milestone is rejected and releases nothing."""
        # Arrange
        escrow.verify_milestone(funded_project, 0, oracle)

        # Act & Assert
        with pytest.raises(StateConflictError) as exc_info:
            escrow.verify_milestone(funded_project, 0, oracle)

        assert isinstance(exc_info.value, AlreadyCompletedError)
        assert escrow.get_project(funded_project).funds_released == 400
        assert len(escrow.events.records(kind=FundsReleased.kind)) == 1

    @pytest.mark.parametrize("index", [3, -1, 100])
    def test_index_out_of_range(self, escrow: MilestoneEscrow, oracle, funded_project, index):
        """Test an out-of-range index raises an IndexError."""
        with pytest.raises(IndexError):
            escrow.verify_milestone(funded_project, index, oracle)

    def test_index_error_is_not_found(self, escrow: MilestoneEscrow, oracle, funded_project):
        """Test the index error is also a NotFoundError with details."""
        with pytest.raises(MilestoneIndexError) as exc_info:
            escrow.verify_milestone(funded_project, 5, oracle)

        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.milestone_count == 3

    def test_unknown_project(self, escrow: MilestoneEscrow, oracle):
        """Test verifying on an unknown project fails with NotFoundError."""
        with pytest.raises(NotFoundError):
            escrow.verify_milestone(42, 0, oracle)

    def test_nothing_to_release_rolls_back(self, escrow: MilestoneEscrow, oracle, creator):
        """Test an unfunded project cannot complete a milestone."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act & Assert
        with pytest.raises(NothingToReleaseError):
            escrow.verify_milestone(project_id, 0, oracle)

        assert not escrow.get_milestones(project_id)[0].completed
        assert escrow.events.records(kind=MilestoneVerified.kind) == []

    def test_out_of_order_verification(self, escrow: MilestoneEscrow, oracle, funded_project):
        """Test any incomplete milestone may be verified first."""
        # Act
        release = escrow.verify_milestone(funded_project, 2, oracle)

        # Assert
        assert release == 300
        milestones = escrow.get_milestones(funded_project)
        assert [m.completed for m in milestones] == [False, False, True]

    def test_release_uses_funds_raised_at_verification(self, escrow: MilestoneEscrow, oracle, creator, funder):
        """Test the [40, 30, 30] scenario with funding between verifications."""
        # Arrange
        project_id = create_project(escrow, creator, percentages=(40, 30, 30))
        escrow.fund_project(project_id, 1000, funder)

        # Act & Assert
        assert escrow.verify_milestone(project_id, 0, oracle) == 400
        assert escrow.get_project(project_id).funds_released == 400

        escrow.fund_project(project_id, 1000, funder)
        assert escrow.get_project(project_id).funds_raised == 2000

        assert escrow.verify_milestone(project_id, 1, oracle) == 600
        assert escrow.get_project(project_id).funds_released == 1000

        assert escrow.verify_milestone(project_id, 2, oracle) == 600
        project = escrow.get_project(project_id)
        assert project.funds_released == 1600
        assert project.undisbursed == 400
        assert escrow.get_contract_balance() == 400

    def test_all_milestones_release_everything_up_to_rounding(self, escrow: MilestoneEscrow, oracle, creator, funder):
        """Test completing every milestone releases raised funds minus floor loss."""
        # Arrange
        project_id = create_project(escrow, creator, percentages=(33, 33, 34))
        escrow.fund_project(project_id, 1001, funder)

        # Act
        for index in range(3):
            escrow.verify_milestone(project_id, index, oracle)

        # Assert
        project = escrow.get_project(project_id)
        assert project.funds_released == 330 + 330 + 340
        assert 0 <= project.funds_raised - project.funds_released <= 2

    def test_released_never_exceeds_raised(self, escrow: MilestoneEscrow, oracle, creator, funder):
        """Test funds_released stays within funds_raised across interleavings."""
        # Arrange
        project_id = create_project(escrow, creator, percentages=(25, 25, 50))

        # Act
        escrow.fund_project(project_id, 400, funder)
        escrow.verify_milestone(project_id, 2, oracle)
        escrow.fund_project(project_id, 800, funder)
        escrow.verify_milestone(project_id, 0, oracle)
        escrow.verify_milestone(project_id, 1, oracle)

        # Assert
        project = escrow.get_project(project_id)
        assert project.funds_released == 200 + 300 + 300
        assert project.funds_released <= project.funds_raised
        assert escrow.get_contract_balance() == project.funds_raised - project.funds_released


class TestDeactivateProject:
    """Test suite for deactivation."""

    def test_creator_can_deactivate(self, escrow: MilestoneEscrow, creator):
        """Test the creator deactivates the project."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act
        escrow.deactivate_project(project_id, creator)

        # Assert
        assert not escrow.get_project(project_id).active
        assert escrow.events.records()[-1].event == ProjectDeactivated(project_id)

    def test_only_creator_can_deactivate(self, escrow: MilestoneEscrow, creator, oracle):
        """Test anyone else, the oracle included, is rejected."""
        # Arrange
        project_id = create_project(escrow, creator)

        # Act & Assert
        with pytest.raises(UnauthorizedError, match="deactivate project 0"):
            escrow.deactivate_project(project_id, oracle)

        assert escrow.get_project(project_id).active

    def test_deactivation_is_terminal(self, escrow: MilestoneEscrow, creator, funder, oracle):
        """Test nothing can be funded or verified after deactivation."""
        # Arrange
        project_id = create_project(escrow, creator)
        escrow.fund_project(project_id, 1000, funder)
        escrow.deactivate_project(project_id, creator)

        # Act & Assert
        with pytest.raises(InactiveProjectError):
            escrow.fund_project(project_id, 100, funder)
        with pytest.raises(StateConflictError):
            escrow.verify_milestone(project_id, 0, oracle)
        with pytest.raises(InactiveProjectError):
            escrow.deactivate_project(project_id, creator)

    def test_funds_stay_in_escrow(self, escrow: MilestoneEscrow, creator, funder, caplog):
        """Test deactivation refunds nothing and warns about held funds."""
        # Arrange
        project_id = create_project(escrow, creator)
        escrow.fund_project(project_id, 1000, funder)

        # Act
        with caplog.at_level("WARNING"):
            escrow.deactivate_project(project_id, creator)

        # Assert
        assert escrow.get_contract_balance() == 1000
        assert escrow.get_undisbursed_balance(project_id) == 1000
        assert "1000 undisbursed" in caplog.text


class TestUpdateOracle:
    """Test suite for oracle rotation."""

    def test_oracle_rotates_itself(self, escrow: MilestoneEscrow, oracle, creator, funder):
        """Test the new oracle can verify and the old one cannot."""
        # Arrange
        new_oracle = new_address()
        project_id = create_project(escrow, creator)
        escrow.fund_project(project_id, 1000, funder)

        # Act
        escrow.update_oracle(new_oracle, oracle)

        # Assert
        assert escrow.get_oracle() == new_oracle
        assert escrow.events.records()[-1].event == OracleUpdated(oracle, new_oracle)
        with pytest.raises(UnauthorizedError):
            escrow.verify_milestone(project_id, 0, oracle)
        assert escrow.verify_milestone(project_id, 0, new_oracle) == 400

    def test_only_oracle_can_rotate(self, escrow: MilestoneEscrow, oracle, creator):
        """Test a non-oracle caller cannot rotate the oracle."""
        with pytest.raises(AuthorizationError):
            escrow.update_oracle(creator, creator)

        assert escrow.get_oracle() == oracle

    def test_new_oracle_must_be_an_address(self, escrow: MilestoneEscrow, oracle):
        """Test rotating to an invalid address is rejected."""
        with pytest.raises(ValidationError, match="Oracle"):
            escrow.update_oracle("nobody", oracle)


class TestReads:
    """Test suite for read operations."""

    def test_unknown_project_reads(self, escrow: MilestoneEscrow, funder):
        """Test reads of an unknown project fail with NotFoundError."""
        with pytest.raises(NotFoundError):
            escrow.get_project(0)
        with pytest.raises(NotFoundError):
            escrow.get_milestones(0)
        with pytest.raises(NotFoundError):
            escrow.get_contribution(0, funder)

    def test_snapshots_are_frozen(self, escrow: MilestoneEscrow, creator):
        """Test returned snapshots cannot be mutated."""
        # Arrange
        project = escrow.get_project(create_project(escrow, creator))

        # Act & Assert
        with pytest.raises(AttributeError):
            project.funds_raised = 10**9

    def test_snapshot_does_not_change_after_writes(self, escrow: MilestoneEscrow, creator, funder):
        """Test a snapshot keeps showing the version it was taken at."""
        # Arrange
        project_id = create_project(escrow, creator)
        before = escrow.get_project(project_id)

        # Act
        escrow.fund_project(project_id, 500, funder)

        # Assert
        assert before.funds_raised == 0
        assert escrow.get_project(project_id).funds_raised == 500

    def test_deploy_requires_valid_oracle(self):
        """Test deploying with an invalid oracle address fails."""
        with pytest.raises(ValidationError):
            MilestoneEscrow.deploy("oracle")

class TestConcurrentVerification:
    """Test suite for verifications of one milestone racing on several threads."""

    THREADS = 8

    def race(self, escrows, oracle, project_id, milestone_index):
        barrier = threading.Barrier(self.THREADS, timeout=10)
        released, rejected, unexpected = [], [], []

        def submit(escrow):
            barrier.wait()
            try:
                released.append(escrow.verify_milestone(project_id, milestone_index, oracle))
            except AlreadyCompletedError:
                rejected.append(milestone_index)
            except Exception as exc:
                unexpected.append(exc)

        threads = [
            threading.Thread(target=submit, args=(escrows[i % len(escrows)],))
            for i in range(self.THREADS)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return released, rejected, unexpected

    @pytest.mark.parametrize("persisted", [False, True])
    def test_one_release_per_milestone(self, oracle, creator, funder, clock, tmp_path, persisted):
        """Test exactly one of many simultaneous verifications releases funds."""
        # Arrange
        if persisted:
            escrow = MilestoneEscrow.deploy(oracle, tmp_path / "ledger.json", tmp_path / "events.jsonl", clock)
        else:
            escrow = MilestoneEscrow.deploy(oracle, clock=clock)
        project_id = escrow.create_project("Clinic", "", 1000, ["Walls", "Roof"], [60, 40], creator)
        escrow.fund_project(project_id, 1000, funder)

        # Act
        released, rejected, unexpected = self.race([escrow], oracle, project_id, 0)

        # Assert
        assert unexpected == []
        assert released == [600]
        assert len(rejected) == self.THREADS - 1
        assert escrow.get_project(project_id).funds_released == 600
        assert escrow.get_account_balance(creator) == 600
        assert escrow.get_contract_balance() == 400
        assert len(escrow.events.records(kind=MilestoneVerified.kind)) == 1
        assert len(escrow.events.records(kind=FundsReleased.kind)) == 1

    def test_one_release_across_handles(self, oracle, creator, funder, clock, tmp_path):
        """Test two handles on one ledger file never both release the same milestone."""
        # Arrange
        ledger_path, events_path = tmp_path / "ledger.json", tmp_path / "events.jsonl"
        first = MilestoneEscrow.deploy(oracle, ledger_path, events_path, clock)
        project_id = first.create_project("Clinic", "", 1000, ["Walls", "Roof"], [60, 40], creator)
        first.fund_project(project_id, 1000, funder)
        second = MilestoneEscrow(LedgerStore.open(ledger_path), EventLog(events_path), clock)

        # Act
        released, rejected, unexpected = self.race([first, second], oracle, project_id, 1)

        # Assert
        assert unexpected == []
        assert released == [400]
        assert len(rejected) == self.THREADS - 1
        reloaded = LedgerStore.load(ledger_path).state
        assert reloaded.projects[project_id].funds_released == 400
        assert reloaded.balance == 600
        replay = EventLog(events_path).records()
        assert [r.kind for r in replay].count(FundsReleased.kind) == 1
        assert [r.sequence for r in replay] == list(range(1, len(replay) + 1))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
