"""
Error taxonomy for the Milestone Escrow contract.

Every rejection raised by the contract is typed and carries a machine-readable
``code`` so callers (the oracle, dashboards) can branch on the class instead of
parsing messages.

    EscrowError
    +-- ValidationError
    |   +-- InvalidAmountError
    +-- AuthorizationError
    |   +-- UnauthorizedError
    +-- NotFoundError
    |   +-- MilestoneIndexError          (also an IndexError)
    +-- StateConflictError
        +-- InactiveProjectError
        +-- AlreadyCompletedError
        +-- NothingToReleaseError
        +-- InsufficientBalanceError

All of these are deterministic, local rejections: the operation that raised
them made no state change, and retrying with the same input fails the same way.
"""


class EscrowError(Exception):
    """Base class for all escrow rejections."""

    code: str = "ESCROW_ERROR"


class ValidationError(EscrowError):
    """Malformed or inconsistent input."""

    code = "VALIDATION_FAILED"


class InvalidAmountError(ValidationError):
    """Funding amount is not a positive integer."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}")


class AuthorizationError(EscrowError):
    """Wrong caller for a privileged operation."""

    code = "UNAUTHORIZED"


class UnauthorizedError(AuthorizationError):
    def __init__(self, caller: str, operation: str):
        self.caller = caller
        self.operation = operation
        super().__init__(f"{caller} is not allowed to {operation}")


class NotFoundError(EscrowError):
    """Unknown project or milestone."""

    code = "NOT_FOUND"

    def __init__(self, project_id):
        self.project_id = project_id
        super().__init__(f"Project {project_id} does not exist")


class MilestoneIndexError(NotFoundError, IndexError):
    code = "MILESTONE_INDEX_OUT_OF_RANGE"

    def __init__(self, project_id: int, milestone_index, milestone_count: int):
        self.project_id = project_id
        self.milestone_index = milestone_index
        self.milestone_count = milestone_count
        EscrowError.__init__(
            self,
            f"Milestone {milestone_index} out of range for project {project_id} "
            f"({milestone_count} milestones)",
        )


class StateConflictError(EscrowError):
    """Operation conflicts with the current ledger state."""

    code = "STATE_CONFLICT"


class InactiveProjectError(StateConflictError):
    code = "PROJECT_INACTIVE"

    def __init__(self, project_id: int):
        self.project_id = project_id
        super().__init__(f"Project {project_id} is not active")


class AlreadyCompletedError(StateConflictError):
    code = "MILESTONE_ALREADY_COMPLETED"

    def __init__(self, project_id: int, milestone_index: int):
        self.project_id = project_id
        self.milestone_index = milestone_index
        super().__init__(
            f"Milestone {milestone_index} of project {project_id} already completed"
        )


class NothingToReleaseError(StateConflictError):
    code = "NOTHING_TO_RELEASE"

    def __init__(self, funds_raised: int, percentage: int):
        self.funds_raised = funds_raised
        self.percentage = percentage
        super().__init__(
            f"No funds to release ({percentage}% of {funds_raised} rounds to 0)"
        )


class InsufficientBalanceError(StateConflictError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient escrow balance: requested {requested}, available {available}"
        )
