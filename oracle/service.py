"""
FundTrack Oracle Service

Monitors escrow projects and attests milestone completion using external
data sources (satellite imagery, IoT sensors, ...).

Two loops run side by side:
- sweep: every ``poll_interval_seconds``, for each active project, attempt
  verification of the first incomplete milestone only
- events: consume the escrow event stream, log it, and re-check a project
  when new funding could unblock a rejected release, at most once per
  milestone per sweep

Both loops only ever submit candidate verifications. The escrow rejects a
second verification of the same milestone with AlreadyCompletedError, which
the service records as a normal outcome.

Failure handling:
- evidence fetch failures and bad metadata are recorded and retried on the
  next sweep
- rejected submissions are recorded and retried on the next sweep, except
  AlreadyCompletedError which settles the milestone
- nothing that goes wrong for one project stops the sweep
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

import requests

from contracts.milestone_escrow.contract import MilestoneEscrow, system_clock
from contracts.milestone_escrow.errors import AlreadyCompletedError
from contracts.milestone_escrow.events import (
    EventDeduplicator,
    EventRecord,
    Funded,
    FundsReleased,
    MilestoneVerified,
    OracleUpdated,
    ProjectCreated,
    ProjectDeactivated,
    Subscription,
)
from oracle.audit_log import AuditLog, AuditRecord, Outcome
from oracle.config import OracleConfig
from oracle.errors import ExternalFetchError, MetadataError, OracleStartupError, SubmissionError
from oracle.gateway import LedgerGateway
from oracle.identity import OracleIdentity
from oracle.metadata import ProjectMetadata, ProjectMetadataStore
from oracle.strategies import StrategyRegistry, build_registry

logger = logging.getLogger(__name__)

# how long the event loop blocks before re-checking the stop signal
EVENT_POLL_SECONDS = 0.5


class Skip(str, Enum):
    """Reasons an attempt ended before any evidence was evaluated."""

    SETTLED_LOCALLY = "settled-locally"
    COMPLETED_ON_LEDGER = "completed-on-ledger"
    UNKNOWN_MILESTONE = "unknown-milestone"
    UNKNOWN_CATEGORY = "unknown-category"


AttemptOutcome = Union[Outcome, Skip]


@dataclass
class SweepReport:
    started_at: int
    projects_checked: int = 0
    errors: int = 0
    outcomes: dict = field(default_factory=dict)

    def count(self, outcome: AttemptOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def verified(self) -> int:
        return self.count(Outcome.VERIFIED)


class OracleService:
    """
    Off-ledger verifier for milestone escrow projects.

    Args:
        gateway: Access to the escrow ledger
        identity: Oracle signing identity (must be the escrow's oracle)
        registry: Verification strategies by category
        metadata: Project metadata lookup
        audit_log: Local log of attempts
        poll_interval_seconds: Time between sweeps
        default_category: Category for projects whose metadata names none
        event_driven_checks: Re-check a project when it receives funding
        clock: Returns the current time as Unix seconds
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        identity: OracleIdentity,
        registry: StrategyRegistry,
        metadata: ProjectMetadataStore,
        audit_log: AuditLog,
        poll_interval_seconds: float = 1800,
        default_category: Optional[str] = None,
        event_driven_checks: bool = True,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.gateway = gateway
        self.identity = identity
        self.registry = registry
        self.metadata = metadata
        self.audit_log = audit_log
        self.poll_interval_seconds = poll_interval_seconds
        self.default_category = default_category
        self.event_driven_checks = event_driven_checks
        self._clock = clock or system_clock

        self._dedup = EventDeduplicator()
        self._stop_event = threading.Event()
        self._subscription: Optional[Subscription] = None
        self._sweep_thread: Optional[threading.Thread] = None
        self._event_thread: Optional[threading.Thread] = None

        self._cycle_lock = threading.Lock()
        self._cycle_started_at: Optional[int] = None
        self._funding_rechecks: set[tuple[int, int]] = set()
        self.last_sweep: Optional[SweepReport] = None

    @classmethod
    def from_config(
        cls,
        config: OracleConfig,
        escrow: MilestoneEscrow,
        session: Optional[requests.Session] = None,
    ) -> "OracleService":
        return cls(
            gateway=LedgerGateway(escrow),
            identity=OracleIdentity.from_mnemonic(config.oracle_mnemonic),
            registry=build_registry(config, session),
            metadata=ProjectMetadataStore(config.metadata_path),
            audit_log=AuditLog(config.audit_log_path),
            poll_interval_seconds=config.poll_interval_seconds,
            default_category=config.default_category,
            event_driven_checks=config.event_driven_checks,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def check_startup(self) -> int:
        """
        Validate the oracle can operate.

        Returns:
            The oracle's operating balance

        Raises:
            OracleStartupError: The identity is not the escrow's oracle
        """
        address = self.identity.address
        authorized = self.gateway.get_oracle()
        if authorized != address:
            raise OracleStartupError(
                f"Oracle identity {address} is not the escrow's authorized oracle ({authorized})"
            )

        balance = self.gateway.get_operating_balance(address)
        logger.info("Oracle address: %s, balance: %d", address, balance)
        if balance == 0:
            logger.warning(
                "Oracle %s has 0 balance and cannot pay for transactions; fund it before relying on it",
                address,
            )

        self.audit_log.rebuild_from_events(self.gateway.replay_events())
        return balance

    def start(self) -> None:
        """Validate, then run the sweep and event loops in background threads."""
        if self.is_running:
            return

        self.check_startup()
        self._stop_event.clear()
        self._subscription = self.gateway.subscribe()

        self._sweep_thread = threading.Thread(
            target=self._sweep_loop, name="oracle-sweep", daemon=True
        )
        self._event_thread = threading.Thread(
            target=self._event_loop, name="oracle-events", daemon=True
        )
        self._sweep_thread.start()
        self._event_thread.start()
        logger.info(
            "Oracle service running, sweeping every %ss with %s strategies",
            self.poll_interval_seconds, ", ".join(self.registry.categories()),
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Stop scheduling sweeps and wait for the in-flight one to finish."""
        self._stop_event.set()
        for thread in (self._sweep_thread, self._event_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=timeout)
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        logger.info("Oracle service stopped")

    @property
    def is_running(self) -> bool:
        return self._sweep_thread is not None and self._sweep_thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""
        return self._stop_event.wait(timeout)

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def run_sweep(self) -> SweepReport:
        """Check every project once."""
        report = SweepReport(started_at=self._clock())
        with self._cycle_lock:
            self._cycle_started_at = report.started_at
            self._funding_rechecks.clear()
        logger.info("Oracle check started")

        project_ids = self.gateway.get_all_project_ids()
        if not project_ids:
            logger.info("No projects found yet")
            self.last_sweep = report
            return report

        for project_id in project_ids:
            if self._stop_event.is_set():
                logger.info("Stop requested, abandoning sweep")
                break
            try:
                result = self.check_project(project_id)
            except Exception:
                logger.exception("Unexpected error checking project %d", project_id)
                report.errors += 1
                continue

            report.projects_checked += 1
            if result is not None:
                milestone_index, outcome = result
                report.outcomes[(project_id, milestone_index)] = outcome

        logger.info(
            "Oracle check completed: %d projects, %d verified",
            report.projects_checked, report.verified,
        )
        self.last_sweep = report
        return report

    def check_project(self, project_id: int) -> Optional[tuple[int, AttemptOutcome]]:
        """
        Attempt the first incomplete milestone of a project.

        Returns:
            (milestone index, outcome), or None when there was nothing to attempt
        """
        project = self.gateway.get_project(project_id)
        if not project.active:
            if project.undisbursed > 0:
                logger.warning(
                    "Project %d is inactive with %d undisbursed funds stuck in escrow",
                    project_id, project.undisbursed,
                )
            else:
                logger.debug("Project %d is inactive, skipping", project_id)
            return None

        milestone = project.next_incomplete_milestone
        if milestone is None:
            logger.debug("Project %d: all milestones completed", project_id)
            return None

        return milestone.index, self.attempt_verification(project_id, milestone.index)

    def attempt_verification(self, project_id: int, milestone_index: int) -> AttemptOutcome:
        """Evaluate one milestone and submit it if the evidence supports it."""
        if self.audit_log.is_settled(project_id, milestone_index):
            logger.debug("Project %d milestone %d already settled locally", project_id, milestone_index)
            return Skip.SETTLED_LOCALLY

        milestones = self.gateway.get_milestones(project_id)
        if not 0 <= milestone_index < len(milestones):
            return Skip.UNKNOWN_MILESTONE
        if milestones[milestone_index].completed:
            logger.info("Project %d milestone %d already completed, skipping", project_id, milestone_index)
            return Skip.COMPLETED_ON_LEDGER

        metadata = self.metadata.get(project_id) or ProjectMetadata(project_id)
        category = metadata.category or self.default_category
        strategy = self.registry.get(category)
        if strategy is None:
            logger.error("No verification rule for project %d category %r, skipping", project_id, category)
            return Skip.UNKNOWN_CATEGORY

        now = self._clock()
        logger.info(
            "Verifying project %d milestone %d (%s) with %s",
            project_id, milestone_index, milestones[milestone_index].title, category,
        )

        evidence_reference = ""
        try:
            evidence_reference = strategy.evidence_reference(project_id, metadata)
            verified = strategy.evaluate(project_id, milestone_index, metadata)
        except MetadataError as exc:
            logger.error("Project %d metadata invalid: %s", project_id, exc)
            return self._record(now, project_id, milestone_index, Outcome.METADATA_INVALID,
                                evidence_reference, detail=str(exc))
        except ExternalFetchError as exc:
            logger.error("Project %d evidence fetch failed: %s", project_id, exc)
            return self._record(now, project_id, milestone_index, Outcome.FETCH_FAILED,
                                evidence_reference, detail=str(exc))

        if not verified:
            logger.info("Project %d milestone %d: criteria not met", project_id, milestone_index)
            return self._record(now, project_id, milestone_index, Outcome.CRITERIA_NOT_MET,
                                evidence_reference)

        try:
            receipt = self.gateway.submit_verification(project_id, milestone_index, self.identity.address)
        except AlreadyCompletedError as exc:
            logger.info("Project %d milestone %d was verified concurrently: %s",
                        project_id, milestone_index, exc)
            return self._record(now, project_id, milestone_index, Outcome.ALREADY_COMPLETED,
                                evidence_reference, detail=str(exc))
        except SubmissionError as exc:
            logger.error("%s", exc)
            return self._record(now, project_id, milestone_index, Outcome.SUBMISSION_FAILED,
                                evidence_reference, detail=exc.reason)

        logger.info(
            "Project %d milestone %d verified, released %d (%s)",
            project_id, milestone_index, receipt.release_amount, receipt.reference,
        )
        return self._record(
            now, project_id, milestone_index, Outcome.VERIFIED, evidence_reference,
            release_amount=receipt.release_amount,
            ledger_version=receipt.ledger_version,
            detail=receipt.reference,
        )

    def _record(
        self,
        timestamp: int,
        project_id: int,
        milestone_index: int,
        outcome: Outcome,
        evidence_reference: str,
        **details,
    ) -> Outcome:
        record = AuditRecord(
            timestamp=timestamp,
            project_id=project_id,
            milestone_index=milestone_index,
            outcome=outcome,
            evidence_reference=evidence_reference,
            signer=self.identity.address,
            **details,
        )
        record.signature = self.identity.sign(record.attestation)
        self.audit_log.append(record)
        return outcome

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, record: EventRecord) -> None:
        if not self._dedup.is_new(record):
            logger.debug("Duplicate event %s ignored", record.dedup_key)
            return

        event = record.event
        if isinstance(event, ProjectCreated):
            logger.info("New project created: %d %r by %s", event.project_id, event.name, event.creator)
        elif isinstance(event, Funded):
            logger.info("Project %d funded %d by %s (total %d)",
                        event.project_id, event.amount, event.funder, event.total_raised)
        elif isinstance(event, MilestoneVerified):
            logger.info("Milestone verified: project %d %r", event.project_id, event.title)
        elif isinstance(event, FundsReleased):
            logger.info("Funds released: project %d, %d to %s",
                        event.project_id, event.amount, event.creator)
        elif isinstance(event, OracleUpdated):
            level = logging.WARNING if event.old_oracle == self.identity.address else logging.INFO
            logger.log(level, "Oracle rotated from %s to %s", event.old_oracle, event.new_oracle)
        elif isinstance(event, ProjectDeactivated):
            logger.info("Project %d deactivated", event.project_id)

        if self.event_driven_checks and isinstance(event, Funded):
            self.recheck_after_funding(event.project_id)

    def recheck_after_funding(self, project_id: int) -> Optional[tuple[int, AttemptOutcome]]:
        """
        Re-check a project that just received funds.

        New funds can only turn a rejected submission (nothing to release
        yet) into a release, so a milestone is re-checked when it has no
        attempt since the current sweep started or its latest one was a
        rejected submission. Each milestone gets at most one such re-check
        per sweep; unmet criteria and failed fetches wait for the next sweep.
        """
        project = self.gateway.get_project(project_id)
        milestone = project.next_incomplete_milestone if project.active else None
        if milestone is None:
            return None

        key = (project_id, milestone.index)
        with self._cycle_lock:
            if key in self._funding_rechecks:
                logger.debug("Project %d milestone %d already re-checked this sweep", *key)
                return None
            latest = self.audit_log.latest_since(project_id, milestone.index, self._cycle_started_at)
            if latest is not None and latest.outcome is not Outcome.SUBMISSION_FAILED:
                logger.debug(
                    "Project %d milestone %d was attempted this sweep (%s), waiting for the next one",
                    project_id, milestone.index, latest.outcome.value,
                )
                return None
            self._funding_rechecks.add(key)

        return milestone.index, self.attempt_verification(project_id, milestone.index)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:
                logger.exception("Oracle sweep failed")
            self._stop_event.wait(timeout=self.poll_interval_seconds)

    def _event_loop(self) -> None:
        while not self._stop_event.is_set():
            record = self._subscription.get(timeout=EVENT_POLL_SECONDS)
            if record is None:
                continue
            try:
                self.handle_event(record)
            except Exception:
                logger.exception("Handling event %d failed", record.sequence)
