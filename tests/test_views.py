"""
Tests for escrow read models

Tests cover:
- Creator and funder project lists
- Portfolio metrics and progress
- Stuck funds on deactivated projects
"""

import pytest

from contracts.milestone_escrow import views
from conftest import new_address


class TestViews:
    """Test suite for dashboard views."""

    @pytest.fixture
    def portfolio(self, escrow, oracle, creator, funder):
        """Two projects by creator, one by someone else; one half-verified."""
        solar = escrow.create_project("Solar", "", 1000, ["Install", "Connect"], [50, 50], creator)
        water = escrow.create_project("Water", "", 4000, ["Drill"], [100], creator)
        school = escrow.create_project("School", "", 2000, ["Build"], [100], new_address())

        escrow.fund_project(solar, 600, funder)
        escrow.fund_project(school, 500, new_address())
        escrow.verify_milestone(solar, 0, oracle)
        return solar, water, school

    def test_projects_created_by(self, escrow, creator, portfolio):
        """Test listing a creator's projects."""
        solar, water, _ = portfolio

        assert [p.id for p in views.projects_created_by(escrow, creator)] == [solar, water]

    def test_projects_funded_by(self, escrow, funder, portfolio):
        """Test listing projects a funder contributed to."""
        solar, _, _ = portfolio

        assert [p.id for p in views.projects_funded_by(escrow, funder)] == [solar]

    def test_portfolio_metrics(self, escrow, creator, portfolio):
        """Test totals across all projects."""
        # Arrange
        _, water, _ = portfolio
        escrow.deactivate_project(water, creator)

        # Act
        metrics = views.portfolio_metrics(views.all_projects(escrow))

        # Assert
        assert metrics.project_count == 3
        assert metrics.active_count == 2
        assert metrics.total_raised == 1100
        assert metrics.total_released == 300
        assert metrics.total_held == 800

    def test_progress(self, escrow, portfolio):
        """Test funding and milestone progress of one project."""
        solar, _, _ = portfolio
        project = escrow.get_project(solar)

        assert views.funding_progress(project) == 60
        assert views.milestone_progress(project) == (1, 2)

    def test_stuck_projects(self, escrow, creator, portfolio):
        """Test deactivated projects still holding funds are reported."""
        # Arrange
        solar, water, _ = portfolio

        # Act
        escrow.deactivate_project(solar, creator)
        escrow.deactivate_project(water, creator)
        stuck = views.stuck_projects(escrow)

        # Assert
        assert [p.id for p in stuck] == [solar]
        assert stuck[0].undisbursed == 300


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
