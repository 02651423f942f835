"""
Ledger state for the Milestone Escrow.

``LedgerState`` is the whole authoritative state of the escrow: projects with
their milestones, contributions, the escrow balance, payouts to creators and the
oracle identity. The contract only ever mutates a private copy of it inside a
transaction (see ``ledger_store``); committed states are treated as immutable.

Readers never receive these records. They get ``ProjectSnapshot`` and
``MilestoneSnapshot`` instances, which are frozen copies.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class MilestoneRecord:
    title: str
    percentage: int
    completed: bool = False
    completed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "percentage": self.percentage,
            "completed": self.completed,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MilestoneRecord":
        return cls(
            title=data["title"],
            percentage=data["percentage"],
            completed=data["completed"],
            completed_at=data.get("completed_at"),
        )


@dataclass
class ProjectRecord:
    id: int
    name: str
    description: str
    creator: str
    target_amount: int
    created_at: int
    milestones: list[MilestoneRecord]
    funds_raised: int = 0
    funds_released: int = 0
    active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "creator": self.creator,
            "target_amount": self.target_amount,
            "created_at": self.created_at,
            "funds_raised": self.funds_raised,
            "funds_released": self.funds_released,
            "active": self.active,
            "milestones": [m.to_dict() for m in self.milestones],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectRecord":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data["description"],
            creator=data["creator"],
            target_amount=data["target_amount"],
            created_at=data["created_at"],
            milestones=[MilestoneRecord.from_dict(m) for m in data["milestones"]],
            funds_raised=data["funds_raised"],
            funds_released=data["funds_released"],
            active=data["active"],
        )


@dataclass
class LedgerState:
    """
    Complete escrow state.

    Attributes:
        oracle: Address of the single authorized oracle
        next_project_id: Id the next created project receives (never reused)
        projects: Project records keyed by id
        contributions: project id -> funder address -> cumulative amount
        balance: Funds currently held in escrow across all projects
        payouts: address -> cumulative amount released to it
        version: Incremented on every committed operation
    """

    oracle: str
    next_project_id: int = 0
    projects: dict[int, ProjectRecord] = field(default_factory=dict)
    contributions: dict[int, dict[str, int]] = field(default_factory=dict)
    balance: int = 0
    payouts: dict[str, int] = field(default_factory=dict)
    version: int = 0

    def to_dict(self) -> dict:
        # JSON object keys must be strings
        return {
            "oracle": self.oracle,
            "next_project_id": self.next_project_id,
            "projects": {str(pid): p.to_dict() for pid, p in self.projects.items()},
            "contributions": {
                str(pid): dict(funders) for pid, funders in self.contributions.items()
            },
            "balance": self.balance,
            "payouts": dict(self.payouts),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerState":
        return cls(
            oracle=data["oracle"],
            next_project_id=data["next_project_id"],
            projects={
                int(pid): ProjectRecord.from_dict(p)
                for pid, p in data.get("projects", {}).items()
            },
            contributions={
                int(pid): dict(funders)
                for pid, funders in data.get("contributions", {}).items()
            },
            balance=data.get("balance", 0),
            payouts=dict(data.get("payouts", {})),
            version=data.get("version", 0),
        )


@dataclass(frozen=True)
class MilestoneSnapshot:
    index: int
    title: str
    percentage: int
    completed: bool
    completed_at: Optional[int]

    @classmethod
    def of(cls, index: int, record: MilestoneRecord) -> "MilestoneSnapshot":
        return cls(
            index=index,
            title=record.title,
            percentage=record.percentage,
            completed=record.completed,
            completed_at=record.completed_at,
        )


@dataclass(frozen=True)
class ProjectSnapshot:
    """Read-only view of a project at one ledger version."""

    id: int
    name: str
    description: str
    creator: str
    target_amount: int
    funds_raised: int
    funds_released: int
    active: bool
    created_at: int
    milestones: tuple[MilestoneSnapshot, ...]

    @property
    def undisbursed(self) -> int:
        return self.funds_raised - self.funds_released

    @property
    def completed_milestones(self) -> int:
        return sum(1 for m in self.milestones if m.completed)

    @property
    def next_incomplete_milestone(self) -> Optional[MilestoneSnapshot]:
        for milestone in self.milestones:
            if not milestone.completed:
                return milestone
        return None

    @classmethod
    def of(cls, record: ProjectRecord) -> "ProjectSnapshot":
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            creator=record.creator,
            target_amount=record.target_amount,
            funds_raised=record.funds_raised,
            funds_released=record.funds_released,
            active=record.active,
            created_at=record.created_at,
            milestones=tuple(
                MilestoneSnapshot.of(i, m) for i, m in enumerate(record.milestones)
            ),
        )
