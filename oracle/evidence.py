"""
External evidence sources.

Each source wraps one HTTP API. All calls carry a timeout, and every way a
fetch can go wrong (connection error, timeout, non-2xx status, body that is
not the expected JSON) surfaces as ``ExternalFetchError`` so callers have one
failure to handle.
"""

import logging
from typing import Optional

import requests

from oracle.errors import ExternalFetchError

logger = logging.getLogger(__name__)


class HttpEvidenceSource:
    """
    Base for JSON-over-HTTP evidence APIs.

    Args:
        base_url: API root
        api_key: Bearer credential
        timeout: Seconds before a request counts as failed
        session: Optional requests session (shared connection pool)
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def _get_json(self, path: str, params: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = self._session.get(url, headers=headers, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout as exc:
            raise ExternalFetchError(self.name, f"timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise ExternalFetchError(self.name, str(exc)) from exc
        except ValueError as exc:
            raise ExternalFetchError(self.name, "response is not valid JSON") from exc

        if not isinstance(data, dict):
            raise ExternalFetchError(self.name, "response is not a JSON object")
        return data


class SatelliteImagerySource(HttpEvidenceSource):
    """Imagery analysis (panel coverage, construction progress) for a location."""

    name = "satellite-imagery"

    def fetch_analysis(self, lat: float, lon: float) -> dict:
        """
        Get the latest imagery analysis for a location.

        Returns:
            Analysis dict, e.g. {"solarPanelCoverage": 65, "constructionProgress": 70}
        """
        logger.debug("Fetching satellite data for (%s, %s)", lat, lon)
        data = self._get_json("/imagery", params={"lat": lat, "lon": lon, "type": "rgb"})
        analysis = data.get("analysis")
        if not isinstance(analysis, dict):
            raise ExternalFetchError(self.name, "response has no analysis")
        return analysis

    def fetch_measurement(self, lat: float, lon: float, key: str) -> float:
        """One figure of the analysis, e.g. ``solarPanelCoverage``. A missing figure reads as 0."""
        value = self.fetch_analysis(lat, lon).get(key)
        if value is None:
            return 0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ExternalFetchError(self.name, f"{key} is not a number: {value!r}")
        return value

    def reference(self, lat: float, lon: float) -> str:
        return f"{self.base_url}/imagery?lat={lat}&lon={lon}"


class SensorTelemetrySource(HttpEvidenceSource):
    """IoT sensor readings, e.g. energy output."""

    name = "sensor-telemetry"

    def fetch_readings(self, sensor_id: str) -> list[float]:
        """
        Get the recorded values of a sensor.

        Returns:
            Reading values, newest first as returned by the API
        """
        logger.debug("Fetching IoT data for sensor %s", sensor_id)
        data = self._get_json(f"/sensors/{sensor_id}/readings")
        readings = data.get("readings")
        if not isinstance(readings, list):
            raise ExternalFetchError(self.name, "response has no readings")
        try:
            return [float(r["value"]) for r in readings]
        except (KeyError, TypeError, ValueError) as exc:
            raise ExternalFetchError(self.name, "malformed reading") from exc

    def reference(self, sensor_id: str) -> str:
        return f"{self.base_url}/sensors/{sensor_id}/readings"
