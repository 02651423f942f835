"""
Verification strategies, one per project category.

A strategy answers one question: given the project's metadata and fresh
external evidence, is this milestone complete?

Categories:
- solar: satellite-measured solar panel coverage >= required_coverage
- construction: satellite-measured construction progress >= required_progress
- energy-output: summed sensor readings >= target_output
- manual-test: always true. SAFETY: this approves every milestone it sees and
  must never be registered in a production oracle. ``build_registry`` only
  adds it when ``allow_manual_verification`` is set.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from oracle.config import OracleConfig
from oracle.evidence import SatelliteImagerySource, SensorTelemetrySource
from oracle.metadata import ProjectMetadata

logger = logging.getLogger(__name__)


class VerificationStrategy(ABC):
    category: str = ""

    @abstractmethod
    def evaluate(self, project_id: int, milestone_index: int, metadata: ProjectMetadata) -> bool:
        """
        Decide whether a milestone is complete.

        Raises:
            ExternalFetchError: Evidence could not be fetched
            MetadataError: Metadata lacks a required threshold or locator
        """

    def evidence_reference(self, project_id: int, metadata: ProjectMetadata) -> str:
        """Where the evidence for this project comes from."""
        return f"{self.category}:{project_id}"


class SolarCoverageStrategy(VerificationStrategy):
    category = "solar"

    def __init__(self, imagery: SatelliteImagerySource):
        self.imagery = imagery

    def evaluate(self, project_id, milestone_index, metadata):
        lat, lon = metadata.require_coordinates()
        required = metadata.threshold(milestone_index, "required_coverage")
        coverage = self.imagery.fetch_measurement(lat, lon, "solarPanelCoverage")
        logger.info("Solar panel coverage: %s%%, required: %s%%", coverage, required)
        return coverage >= required

    def evidence_reference(self, project_id, metadata):
        return self.imagery.reference(*metadata.require_coordinates())


class ConstructionProgressStrategy(VerificationStrategy):
    category = "construction"

    def __init__(self, imagery: SatelliteImagerySource):
        self.imagery = imagery

    def evaluate(self, project_id, milestone_index, metadata):
        lat, lon = metadata.require_coordinates()
        required = metadata.threshold(milestone_index, "required_progress")
        progress = self.imagery.fetch_measurement(lat, lon, "constructionProgress")
        logger.info("Construction progress: %s%%, required: %s%%", progress, required)
        return progress >= required

    def evidence_reference(self, project_id, metadata):
        return self.imagery.reference(*metadata.require_coordinates())


class EnergyOutputStrategy(VerificationStrategy):
    category = "energy-output"

    def __init__(self, telemetry: SensorTelemetrySource):
        self.telemetry = telemetry

    def evaluate(self, project_id, milestone_index, metadata):
        sensor_id = metadata.require_sensor_id()
        target = metadata.threshold(milestone_index, "target_output")
        readings = self.telemetry.fetch_readings(sensor_id)

        total_output = sum(readings)
        logger.info("Energy output: %s kWh, target: %s kWh", total_output, target)
        return total_output >= target

    def evidence_reference(self, project_id, metadata):
        return self.telemetry.reference(metadata.require_sensor_id())


class ManualApprovalStrategy(VerificationStrategy):
    """Approves everything. Test deployments only."""

    category = "manual-test"

    def evaluate(self, project_id, milestone_index, metadata):
        logger.warning(
            "Using manual-test verification (auto-approve) for project %d milestone %d",
            project_id, milestone_index,
        )
        return True


class StrategyRegistry:
    def __init__(self):
        self._strategies: dict[str, VerificationStrategy] = {}

    def register(self, strategy: VerificationStrategy) -> None:
        if not strategy.category:
            raise ValueError(f"{type(strategy).__name__} has no category")
        self._strategies[strategy.category] = strategy

    def get(self, category: Optional[str]) -> Optional[VerificationStrategy]:
        if category is None:
            return None
        return self._strategies.get(category)

    def categories(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, category: str) -> bool:
        return category in self._strategies


def build_registry(
    config: OracleConfig, session: Optional[requests.Session] = None
) -> StrategyRegistry:
    """Registry with every production strategy, plus manual-test if allowed."""
    imagery = SatelliteImagerySource(
        config.evidence_source_url,
        config.evidence_source_api_key,
        timeout=config.fetch_timeout_seconds,
        session=session,
    )
    telemetry = SensorTelemetrySource(
        config.telemetry_source_url,
        config.evidence_source_api_key,
        timeout=config.fetch_timeout_seconds,
        session=session,
    )

    registry = StrategyRegistry()
    registry.register(SolarCoverageStrategy(imagery))
    registry.register(ConstructionProgressStrategy(imagery))
    registry.register(EnergyOutputStrategy(telemetry))

    if config.allow_manual_verification:
        logger.warning(
            "ORACLE_ALLOW_MANUAL_VERIFICATION is on: the manual-test strategy "
            "approves every milestone without evidence. Never use this in production."
        )
        registry.register(ManualApprovalStrategy())
    return registry
