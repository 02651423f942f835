"""
Oracle configuration.

Values come from environment variables (populate them from a ``.env`` file
with ``dotenv.load_dotenv()`` before calling ``OracleConfig.from_env``).

Required:
- ORACLE_MNEMONIC: 25-word mnemonic of the oracle account
- LEDGER_ENDPOINT: path of the escrow ledger state file
- EVIDENCE_SOURCE_URL: base URL of the imagery/evidence API
- EVIDENCE_SOURCE_API_KEY: credential for the evidence API

Optional:
- ORACLE_POLL_INTERVAL_SECONDS (default 1800)
- TELEMETRY_SOURCE_URL (default: EVIDENCE_SOURCE_URL)
- ORACLE_DEFAULT_CATEGORY
- ORACLE_FETCH_TIMEOUT_SECONDS (default 10)
- ORACLE_AUDIT_LOG_PATH (default verification-log.jsonl)
- ORACLE_METADATA_PATH (default project-metadata.json)
- ORACLE_EVENT_LOG_PATH
- ORACLE_EVENT_DRIVEN_CHECKS (default true)
- ORACLE_ALLOW_MANUAL_VERIFICATION (default false) - enables the
  always-approve "manual-test" strategy; never enable in production
- ORACLE_LOG_LEVEL (default INFO)
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from oracle.errors import ConfigurationError

REQUIRED_KEYS = (
    "ORACLE_MNEMONIC",
    "LEDGER_ENDPOINT",
    "EVIDENCE_SOURCE_URL",
    "EVIDENCE_SOURCE_API_KEY",
)

DEFAULT_POLL_INTERVAL_SECONDS = 30 * 60
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off", "")


def _parse_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")


def _parse_positive(environ: Mapping[str, str], key: str, default, cast):
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class OracleConfig:
    oracle_mnemonic: str = field(repr=False)
    ledger_endpoint: str
    evidence_source_url: str
    evidence_source_api_key: str = field(repr=False)
    telemetry_source_url: str
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    default_category: Optional[str] = None
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    audit_log_path: str = "verification-log.jsonl"
    metadata_path: str = "project-metadata.json"
    event_log_path: Optional[str] = None
    event_driven_checks: bool = True
    allow_manual_verification: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OracleConfig":
        """
        Build the configuration from environment variables.

        Raises:
            ConfigurationError: Required keys are missing (all of them are
                named in the message) or a value is malformed
        """
        if environ is None:
            environ = os.environ

        missing = [key for key in REQUIRED_KEYS if not (environ.get(key) or "").strip()]
        if missing:
            raise ConfigurationError(
                "Missing required oracle configuration: " + ", ".join(missing)
            )

        evidence_url = environ["EVIDENCE_SOURCE_URL"].strip().rstrip("/")
        telemetry_url = (environ.get("TELEMETRY_SOURCE_URL") or "").strip().rstrip("/")

        return cls(
            oracle_mnemonic=environ["ORACLE_MNEMONIC"].strip(),
            ledger_endpoint=environ["LEDGER_ENDPOINT"].strip(),
            evidence_source_url=evidence_url,
            evidence_source_api_key=environ["EVIDENCE_SOURCE_API_KEY"].strip(),
            telemetry_source_url=telemetry_url or evidence_url,
            poll_interval_seconds=_parse_positive(
                environ, "ORACLE_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, int
            ),
            default_category=(environ.get("ORACLE_DEFAULT_CATEGORY") or "").strip() or None,
            fetch_timeout_seconds=_parse_positive(
                environ, "ORACLE_FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS, float
            ),
            audit_log_path=environ.get("ORACLE_AUDIT_LOG_PATH") or "verification-log.jsonl",
            metadata_path=environ.get("ORACLE_METADATA_PATH") or "project-metadata.json",
            event_log_path=environ.get("ORACLE_EVENT_LOG_PATH") or None,
            event_driven_checks=_parse_bool(environ, "ORACLE_EVENT_DRIVEN_CHECKS", True),
            allow_manual_verification=_parse_bool(
                environ, "ORACLE_ALLOW_MANUAL_VERIFICATION", False
            ),
            log_level=(environ.get("ORACLE_LOG_LEVEL") or "INFO").upper(),
        )
