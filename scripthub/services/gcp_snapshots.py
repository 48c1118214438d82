"""
GCP Snapshot Rotation - create a disk snapshot and keep the newest N.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from scripthub.errors import CommandError, ValidationError
from scripthub.schemas.models import SnapshotInfo, SnapshotRotationResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.gcp")

CREATED_BY = "scripthub"
LIST_FORMAT = "json(name,creationTimestamp,diskSizeGb,storageBytes,sourceDisk)"
_LABEL_RE = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")


@dataclass
class SnapshotOptions:
    project: str
    disk: str
    zone: Optional[str] = None
    region: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    keep: int = 7
    filter: Optional[str] = None
    dry_run: bool = False
    create: bool = True


def parse_labels(values: List[str]) -> Dict[str, str]:
    labels = {}
    for value in values or []:
        for pair in value.split(","):
            key, sep, label_value = pair.partition("=")
            key = key.strip()
            if not sep or not _LABEL_RE.match(key):
                raise ValidationError(f"Invalid label '{pair}' (use key=value with lowercase keys)")
            labels[key] = label_value.strip()
    return labels


def snapshot_name(disk: str, now: Optional[datetime] = None) -> str:
    return f"{disk}-{(now or datetime.now()).strftime('%Y%m%d-%H%M%S')}"


def parse_snapshots(output: str) -> List[SnapshotInfo]:
    """gcloud JSON list, newest first."""
    data = json.loads(output or "[]")
    snapshots = [
        SnapshotInfo(
            name=item.get("name", ""),
            creation_timestamp=item.get("creationTimestamp", ""),
            disk_size_gb=str(item.get("diskSizeGb", "")),
            storage_bytes=str(item.get("storageBytes", "")),
        )
        for item in data
    ]
    return sorted(snapshots, key=lambda s: s.creation_timestamp, reverse=True)


class SnapshotRotator:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    def _location_args(self, options: SnapshotOptions) -> List[str]:
        if options.zone:
            return [f"--zone={options.zone}"]
        return [f"--region={options.region}"]

    async def validate(self, options: SnapshotOptions) -> None:
        if bool(options.zone) == bool(options.region):
            raise ValidationError("Specify exactly one of --zone or --region")
        if options.keep < 1:
            raise ValidationError("--keep must be at least 1")
        require_commands("gcloud")

        project = await self.runner.run(["gcloud", "projects", "describe", options.project, "--format=value(projectId)"], timeout=60)
        if not project.success:
            raise ValidationError(f"Project '{options.project}' not found or not accessible")
        disk = await self.runner.run(
            ["gcloud", "compute", "disks", "describe", options.disk, f"--project={options.project}",
             *self._location_args(options), "--format=value(name)"],
            timeout=60,
        )
        if not disk.success:
            location = options.zone or options.region
            raise ValidationError(f"Disk '{options.disk}' not found in {location}")

    async def create_snapshot(self, options: SnapshotOptions, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        name = snapshot_name(options.disk, now)
        labels = dict(options.labels)
        labels.update({
            "source-disk": options.disk,
            "created-by": CREATED_BY,
            "created-at": now.strftime("%Y%m%d-%H%M%S"),
        })
        argv = [
            "gcloud", "compute", "snapshots", "create", name,
            f"--project={options.project}",
            f"--source-disk={options.disk}",
        ]
        if options.zone:
            argv.append(f"--source-disk-zone={options.zone}")
        else:
            argv.append(f"--source-disk-region={options.region}")
        argv.append(f"--description=Automated snapshot created by {CREATED_BY} on {now:%Y-%m-%d %H:%M:%S}")
        argv.append("--labels=" + ",".join(f"{k}={v}" for k, v in labels.items()))

        if options.dry_run:
            logger.info(f"[DRY RUN] Would create snapshot {name}")
            return name
        logger.info(f"Creating snapshot {name} of disk {options.disk}")
        result = await self.runner.run(argv, timeout=1800)
        if not result.success:
            raise CommandError(argv, result.exit_code, result.stderr)
        log_success(logger, f"Snapshot {name} created")
        return name

    async def list_snapshots(self, options: SnapshotOptions) -> List[SnapshotInfo]:
        query = options.filter or f"labels.source-disk={options.disk}"
        argv = [
            "gcloud", "compute", "snapshots", "list",
            f"--project={options.project}",
            f"--filter={query}",
            f"--format={LIST_FORMAT}",
        ]
        result = await self.runner.check(argv, timeout=120)
        return parse_snapshots(result.stdout)

    async def rotate(self, options: SnapshotOptions) -> SnapshotRotationResult:
        """Create (unless disabled) and delete everything beyond the newest keep."""
        await self.validate(options)
        outcome = SnapshotRotationResult()
        if options.create:
            outcome.created = await self.create_snapshot(options)

        snapshots = await self.list_snapshots(options)
        outcome.kept = [s.name for s in snapshots[: options.keep]]
        expired = snapshots[options.keep:]
        logger.info(f"Found {len(snapshots)} snapshot(s); keeping {len(outcome.kept)}, removing {len(expired)}")

        for snapshot in expired:
            if options.dry_run:
                logger.info(f"[DRY RUN] Would delete snapshot {snapshot.name} ({snapshot.creation_timestamp})")
                continue
            result = await self.runner.run(
                ["gcloud", "compute", "snapshots", "delete", snapshot.name, f"--project={options.project}", "--quiet"],
                timeout=1800,
            )
            if result.success:
                logger.info(f"Deleted snapshot {snapshot.name}")
                outcome.deleted.append(snapshot.name)
            else:
                logger.error(f"Failed to delete snapshot {snapshot.name}: {result.stderr}")
                outcome.failed.append(snapshot.name)
        return outcome
