"""
Manage FundTrack Projects

Operator commands against the escrow ledger the oracle watches:
- create: open a project with its milestone plan, and optionally write the
  verification metadata (category, location, sensor, thresholds) the oracle
  needs for it
- fund: contribute to a project
- deactivate: close a project (creator only)
- show: print the ledger

The oracle may be running on the same ledger; every write takes the ledger
lock and builds on the newest version on disk.

Usage:
    python -m scripts.manage_projects create --name "Solar Farm" --target 10000 \\
        --creator <ADDRESS> --milestone "Site:40" --milestone "Panels:60" \\
        --category solar --lat -1.94 --lon 29.87 --threshold 25 --threshold 80
    python -m scripts.manage_projects fund --project 0 --amount 5000 --funder <ADDRESS>
    python -m scripts.manage_projects deactivate --project 0 --creator <ADDRESS>
    python -m scripts.manage_projects show
"""

import os
import argparse
from pathlib import Path
from dotenv import load_dotenv

from contracts.milestone_escrow.contract import MilestoneEscrow
from contracts.milestone_escrow.errors import EscrowError
from contracts.milestone_escrow.events import EventLog
from contracts.milestone_escrow.ledger_store import LedgerStore
from oracle.metadata import ProjectMetadata, ProjectMetadataStore
from scripts.init_ledger import show_ledger

load_dotenv()

# metadata key each category's strategy compares against
THRESHOLD_KEYS = {
    "solar": "required_coverage",
    "construction": "required_progress",
    "energy-output": "target_output",
}


def parse_milestone(value: str) -> tuple[str, int]:
    """'Title:40' -> ('Title', 40)"""
    title, sep, percentage = value.rpartition(":")
    if not sep or not title.strip():
        raise argparse.ArgumentTypeError(f"Expected TITLE:PERCENT, got {value!r}")
    try:
        return title.strip(), int(percentage)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Percentage must be an integer, got {percentage!r}")


def open_escrow(args) -> MilestoneEscrow:
    path = Path(args.ledger)
    if not path.exists():
        print(f"❌ No ledger at {path}. Create one with: python -m scripts.init_ledger")
        raise SystemExit(1)
    return MilestoneEscrow(LedgerStore.open(path), EventLog(args.events))


def build_metadata(args, project_id: int, milestone_count: int):
    """Verification metadata from the create options, or None if none were given."""
    if not args.category:
        if args.threshold or args.lat is not None or args.lon is not None or args.sensor:
            raise ValueError("--category is required with --threshold, --lat, --lon or --sensor")
        return None

    thresholds = args.threshold or []
    if thresholds and len(thresholds) != milestone_count:
        raise ValueError(
            f"Got {len(thresholds)} thresholds for {milestone_count} milestones"
        )
    if (args.lat is None) != (args.lon is None):
        raise ValueError("--lat and --lon go together")

    key = THRESHOLD_KEYS.get(args.category)
    if thresholds and key is None:
        raise ValueError(f"Category {args.category!r} takes no thresholds")

    return ProjectMetadata(
        project_id=project_id,
        category=args.category,
        coordinates={"lat": args.lat, "lon": args.lon} if args.lat is not None else None,
        sensor_id=args.sensor,
        milestones=tuple({key: t} for t in thresholds),
    )


def create(args):
    escrow = open_escrow(args)
    titles = [title for title, _ in args.milestone]
    percentages = [percentage for _, percentage in args.milestone]

    # bad metadata options fail before anything reaches the ledger
    build_metadata(args, 0, len(titles))

    project_id = escrow.create_project(
        args.name, args.description, args.target, titles, percentages, args.creator
    )
    print(f"\n✅ Project #{project_id} created: {args.name}")
    print(f"   Target: {args.target}")
    for i, (title, percentage) in enumerate(args.milestone):
        print(f"   Milestone {i}: {title} ({percentage}%)")

    metadata = build_metadata(args, project_id, len(titles))
    if metadata is not None:
        ProjectMetadataStore(args.metadata).put(metadata)
        print(f"\n🛰️  Verification metadata written to {args.metadata} ({metadata.category})")
    else:
        print("\n⚠️  No --category given: the oracle uses ORACLE_DEFAULT_CATEGORY for this project")


def fund(args):
    escrow = open_escrow(args)
    total = escrow.fund_project(args.project, args.amount, args.funder)
    project = escrow.get_project(args.project)
    print(f"\n💰 Project #{args.project} funded {args.amount} by {args.funder}")
    print(f"   Raised: {total} of {project.target_amount}")


def deactivate(args):
    escrow = open_escrow(args)
    escrow.deactivate_project(args.project, args.creator)
    undisbursed = escrow.get_undisbursed_balance(args.project)
    print(f"\n🛑 Project #{args.project} deactivated")
    if undisbursed:
        print(f"   ⚠️  {undisbursed} undisbursed funds stay in escrow")


def show(args):
    path = Path(args.ledger)
    if not path.exists():
        print(f"❌ No ledger at {path}")
        raise SystemExit(1)
    show_ledger(path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage FundTrack escrow projects")
    parser.add_argument(
        "--ledger",
        type=str,
        default=os.getenv("LEDGER_ENDPOINT", "ledger.json"),
        help="Ledger file"
    )
    parser.add_argument(
        "--events",
        type=str,
        default=os.getenv("ORACLE_EVENT_LOG_PATH"),
        help="Event log file"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a project")
    create_parser.add_argument("--name", required=True)
    create_parser.add_argument("--description", default="")
    create_parser.add_argument("--target", type=int, required=True, help="Funding target")
    create_parser.add_argument("--creator", required=True, help="Creator address")
    create_parser.add_argument(
        "--milestone",
        type=parse_milestone,
        action="append",
        required=True,
        help="TITLE:PERCENT, repeat once per milestone"
    )
    create_parser.add_argument(
        "--category",
        help=f"Verification category ({', '.join(sorted(THRESHOLD_KEYS))}, manual-test)"
    )
    create_parser.add_argument("--lat", type=float, help="Site latitude")
    create_parser.add_argument("--lon", type=float, help="Site longitude")
    create_parser.add_argument("--sensor", help="Sensor ID for energy-output projects")
    create_parser.add_argument(
        "--threshold",
        type=float,
        action="append",
        help="Verification threshold, repeat once per milestone"
    )
    create_parser.add_argument(
        "--metadata",
        default=os.getenv("ORACLE_METADATA_PATH", "project-metadata.json"),
        help="Project metadata file the oracle reads"
    )
    create_parser.set_defaults(handler=create)

    fund_parser = subparsers.add_parser("fund", help="Fund a project")
    fund_parser.add_argument("--project", type=int, required=True)
    fund_parser.add_argument("--amount", type=int, required=True)
    fund_parser.add_argument("--funder", required=True, help="Funder address")
    fund_parser.set_defaults(handler=fund)

    deactivate_parser = subparsers.add_parser("deactivate", help="Deactivate a project")
    deactivate_parser.add_argument("--project", type=int, required=True)
    deactivate_parser.add_argument("--creator", required=True, help="Creator address")
    deactivate_parser.set_defaults(handler=deactivate)

    show_parser = subparsers.add_parser("show", help="Show the ledger")
    show_parser.set_defaults(handler=show)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    print("\n🌱 FundTrack - Projects\n")
    print("=" * 50)

    try:
        args.handler(args)
    except (EscrowError, ValueError) as e:
        print(f"❌ {e}")
        raise SystemExit(1)

    print("\n" + "=" * 50)


if __name__ == "__main__":
    main()
