"""
Initialize a FundTrack Escrow Ledger

Creates the escrow ledger file with the oracle address as its authorized
oracle. This is the deploy step: run it once, then point LEDGER_ENDPOINT at
the file.

The oracle address is taken from --oracle, or derived from ORACLE_MNEMONIC.

Usage:
    python -m scripts.init_ledger --ledger ledger.json
    python -m scripts.init_ledger --ledger ledger.json --oracle <ADDRESS>
    python -m scripts.init_ledger --ledger ledger.json --show
"""

import os
import argparse
from pathlib import Path
from dotenv import load_dotenv

from contracts.milestone_escrow.contract import MilestoneEscrow
from contracts.milestone_escrow.errors import ValidationError
from contracts.milestone_escrow.ledger_store import LedgerStore
from oracle.errors import ConfigurationError
from oracle.identity import OracleIdentity

load_dotenv()


def resolve_oracle_address(explicit: str = None) -> str:
    """Oracle address from the argument, else from ORACLE_MNEMONIC."""
    if explicit:
        return explicit

    phrase = os.getenv("ORACLE_MNEMONIC")
    if not phrase:
        raise ConfigurationError("Pass --oracle or set ORACLE_MNEMONIC in environment")
    return OracleIdentity.from_mnemonic(phrase).address


def show_ledger(path: Path):
    """Print a summary of an existing ledger."""
    store = LedgerStore.load(path)
    escrow = MilestoneEscrow(store)

    print(f"\n📒 Ledger: {path}")
    print(f"   Version: {escrow.ledger_version}")
    print(f"   Oracle: {escrow.get_oracle()}")
    print(f"   Projects: {escrow.get_project_count()}")
    print(f"   Escrow balance: {escrow.get_contract_balance()}")

    for project_id in escrow.get_all_project_ids():
        project = escrow.get_project(project_id)
        status = "active" if project.active else "inactive"
        print(
            f"   - #{project.id} {project.name} ({status}): "
            f"raised {project.funds_raised}, released {project.funds_released}, "
            f"milestones {project.completed_milestones}/{len(project.milestones)}"
        )


def main():
    parser = argparse.ArgumentParser(description="Initialize a FundTrack escrow ledger")
    parser.add_argument(
        "--ledger",
        type=str,
        default=os.getenv("LEDGER_ENDPOINT", "ledger.json"),
        help="Ledger file to create"
    )
    parser.add_argument(
        "--oracle",
        type=str,
        help="Oracle address (default: derived from ORACLE_MNEMONIC)"
    )
    parser.add_argument(
        "--events",
        type=str,
        default=os.getenv("ORACLE_EVENT_LOG_PATH"),
        help="Event log file"
    )
    parser.add_argument(
        "--show",
        action="store_true",
        help="Only show the existing ledger"
    )

    args = parser.parse_args()
    path = Path(args.ledger)

    print("\n🌱 FundTrack - Escrow Ledger Setup\n")
    print("=" * 50)

    if args.show:
        if not path.exists():
            print(f"❌ No ledger at {path}")
            raise SystemExit(1)
        show_ledger(path)
        print("\n" + "=" * 50)
        return

    if path.exists():
        print(f"⚠️  Ledger already exists at {path}, not overwriting")
        show_ledger(path)
        raise SystemExit(1)

    try:
        oracle_address = resolve_oracle_address(args.oracle)
        escrow = MilestoneEscrow.deploy(oracle_address, path=path, event_log_path=args.events)
    except (ConfigurationError, ValidationError) as e:
        print(f"❌ {e}")
        raise SystemExit(1)

    print(f"\n✅ Escrow ledger created!")
    print(f"   File: {path}")
    print(f"   Oracle: {escrow.get_oracle()}")
    print(f"\n📋 Add to .env file:")
    print(f"   LEDGER_ENDPOINT={path}")

    print("\n" + "=" * 50)
    print("Done!\n")


if __name__ == "__main__":
    main()
