"""
Read models over the escrow for dashboards and operators.

Pure functions over contract reads; nothing here mutates the ledger.
"""

from dataclasses import dataclass
from typing import Iterable

from contracts.milestone_escrow.contract import MilestoneEscrow
from contracts.milestone_escrow.state import ProjectSnapshot


@dataclass(frozen=True)
class PortfolioMetrics:
    project_count: int
    active_count: int
    total_raised: int
    total_released: int

    @property
    def total_held(self) -> int:
        return self.total_raised - self.total_released


def all_projects(escrow: MilestoneEscrow) -> list[ProjectSnapshot]:
    return [escrow.get_project(pid) for pid in escrow.get_all_project_ids()]


def projects_created_by(escrow: MilestoneEscrow, address: str) -> list[ProjectSnapshot]:
    return [p for p in all_projects(escrow) if p.creator == address]


def projects_funded_by(escrow: MilestoneEscrow, address: str) -> list[ProjectSnapshot]:
    return [
        p for p in all_projects(escrow)
        if escrow.get_contribution(p.id, address) > 0
    ]


def portfolio_metrics(projects: Iterable[ProjectSnapshot]) -> PortfolioMetrics:
    projects = list(projects)
    return PortfolioMetrics(
        project_count=len(projects),
        active_count=sum(1 for p in projects if p.active),
        total_raised=sum(p.funds_raised for p in projects),
        total_released=sum(p.funds_released for p in projects),
    )


def funding_progress(project: ProjectSnapshot) -> int:
    """Percent of the target raised, floored. May exceed 100."""
    return project.funds_raised * 100 // project.target_amount


def milestone_progress(project: ProjectSnapshot) -> tuple[int, int]:
    """(completed milestones, total milestones)"""
    return project.completed_milestones, len(project.milestones)


def stuck_projects(escrow: MilestoneEscrow) -> list[ProjectSnapshot]:
    """
    Deactivated projects that still hold funds.

    Nothing can release these funds any more: verification requires an
    active project and deactivation is irreversible.
    """
    return [p for p in all_projects(escrow) if not p.active and p.undisbursed > 0]
