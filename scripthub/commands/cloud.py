"""Cloud commands: gcp-snapshots."""

import argparse
import asyncio
import logging

from scripthub.commands import positive_int
from scripthub.errors import ValidationError
from scripthub.services.gcp_snapshots import SnapshotOptions, SnapshotRotator, parse_labels
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.cli")


def cmd_gcp_snapshots(args: argparse.Namespace) -> int:
    if bool(args.zone) == bool(args.region):
        raise ValidationError("Specify exactly one of --zone or --region")

    options = SnapshotOptions(
        project=args.project,
        disk=args.disk,
        zone=args.zone,
        region=args.region,
        labels=parse_labels(args.label or []),
        keep=args.keep,
        filter=args.filter,
        dry_run=args.dry_run,
        create=not args.no_create,
    )
    outcome = asyncio.run(SnapshotRotator().rotate(options))

    if outcome.failed:
        logger.error(f"{len(outcome.failed)} snapshot(s) could not be deleted: {', '.join(outcome.failed)}")
        return 1
    log_success(logger, f"Rotation complete: {len(outcome.kept)} kept, {len(outcome.deleted)} deleted")
    return 0


def register(subparsers: argparse._SubParsersAction) -> None:
    gcp = subparsers.add_parser("gcp-snapshots", help="Create and rotate GCP persistent disk snapshots")
    gcp.add_argument("-p", "--project", required=True)
    gcp.add_argument("-d", "--disk", required=True)
    gcp.add_argument("-z", "--zone")
    gcp.add_argument("-r", "--region")
    gcp.add_argument("-l", "--label", action="append", metavar="KEY=VALUE", help="snapshot label (repeatable)")
    gcp.add_argument("-k", "--keep", type=positive_int, default=7, help="snapshots to keep (default: 7)")
    gcp.add_argument("-f", "--filter", help="gcloud filter for the snapshots to rotate")
    gcp.add_argument("-n", "--dry-run", action="store_true")
    gcp.add_argument("--no-create", action="store_true", help="only rotate existing snapshots")
    gcp.set_defaults(handler=cmd_gcp_snapshots)
