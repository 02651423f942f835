"""
Run the FundTrack Verification Oracle

Loads configuration from the environment (.env is read automatically),
opens the escrow ledger at LEDGER_ENDPOINT and starts the oracle service.

Usage:
    python -m scripts.run_oracle
    python -m scripts.run_oracle --once
    python -m scripts.run_oracle --verify-audit-log
"""

import argparse
import logging
from dotenv import load_dotenv

from contracts.milestone_escrow.contract import MilestoneEscrow
from contracts.milestone_escrow.events import EventLog
from contracts.milestone_escrow.ledger_store import LedgerStore
from oracle.config import OracleConfig
from oracle.errors import OracleError
from oracle.logger import configure_logging
from oracle.service import OracleService

load_dotenv()

logger = logging.getLogger("scripts.run_oracle")


def build_service(config: OracleConfig) -> OracleService:
    """Open the ledger named by the configuration and wire the service to it."""
    store = LedgerStore.open(config.ledger_endpoint)
    escrow = MilestoneEscrow(store, EventLog(config.event_log_path))
    return OracleService.from_config(config, escrow)


def main():
    parser = argparse.ArgumentParser(description="Run the FundTrack verification oracle")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit"
    )
    parser.add_argument(
        "--verify-audit-log",
        action="store_true",
        help="Check the signatures in the audit log and exit"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="Override ORACLE_LOG_LEVEL"
    )

    args = parser.parse_args()

    try:
        config = OracleConfig.from_env()
    except OracleError as e:
        print(f"❌ {e}")
        raise SystemExit(1)

    configure_logging(args.log_level or config.log_level)
    print("\n🛰️  FundTrack - Verification Oracle\n")
    print("=" * 50)

    try:
        service = build_service(config)
    except (OracleError, FileNotFoundError) as e:
        print(f"❌ {e}")
        raise SystemExit(1)

    if args.verify_audit_log:
        bad = service.audit_log.unverifiable_records(service.identity.address)
        print(f"\n🔏 {len(service.audit_log)} audit records, {len(bad)} with bad signatures")
        for record in bad:
            print(f"   ❌ project {record.project_id} milestone {record.milestone_index} at {record.timestamp}")
        raise SystemExit(1 if bad else 0)

    try:
        if args.once:
            service.check_startup()
            report = service.run_sweep()
            print(f"\n✅ Sweep done: {report.projects_checked} projects, {report.verified} verified, {report.errors} errors")
            return

        service.start()
        print(f"\n🔄 Monitoring every {config.poll_interval_seconds}s. Press Ctrl+C to stop.")
        service.wait()
    except OracleError as e:
        logger.error("%s", e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("\n👋 Stopping oracle...")
    finally:
        service.stop()


if __name__ == "__main__":
    main()
