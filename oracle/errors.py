"""Errors raised on the oracle side of FundTrack."""


class OracleError(Exception):
    code: str = "ORACLE_ERROR"


class ConfigurationError(OracleError):
    """Required configuration is missing or malformed."""

    code = "CONFIGURATION_INVALID"


class OracleStartupError(OracleError):
    """The service cannot run with the identity it was given."""

    code = "ORACLE_STARTUP_FAILED"


class MetadataError(OracleError):
    """Project metadata lacks what a verification strategy needs."""

    code = "METADATA_INVALID"


class ExternalFetchError(OracleError):
    """Evidence source unreachable, timed out, or returned garbage."""

    code = "EXTERNAL_FETCH_FAILED"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Fetching evidence from {source} failed: {reason}")


class SubmissionError(OracleError):
    """
    The ledger rejected or failed to apply a verification.

    The ledger's own exception is chained as ``__cause__``.
    """

    code = "SUBMISSION_FAILED"

    def __init__(self, project_id: int, milestone_index: int, reason: str):
        self.project_id = project_id
        self.milestone_index = milestone_index
        self.reason = reason
        super().__init__(
            f"Verification of project {project_id} milestone {milestone_index} "
            f"was not applied: {reason}"
        )
