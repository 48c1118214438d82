"""
Disk Usage Alert - threshold checks over `df -P -k`.
"""

import logging
import socket
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from scripthub.errors import CommandError, ValidationError
from scripthub.schemas.models import CheckStatus, DiskUsage
from scripthub.services.command_runner import CommandRunner, get_command_runner
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.units import format_bytes, parse_percent

logger = logging.getLogger("scripthub.disk")

HEADERS = ["Filesystem", "Size", "Used", "Avail", "Use%", "Mounted on", "Status"]


def parse_df(output: str) -> List[DiskUsage]:
    """
    Parse POSIX df output.

    Mount points may contain spaces, so everything after the capacity
    column is the mount point.
    """
    entries = []
    for line in output.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 6:
            continue
        percent = parse_percent(fields[4])
        if percent is None or not all(f.isdigit() for f in fields[1:4]):
            continue
        entries.append(DiskUsage(
            filesystem=fields[0],
            size_kb=int(fields[1]),
            used_kb=int(fields[2]),
            avail_kb=int(fields[3]),
            percent=percent,
            mount=line.split(None, 5)[5],
        ))
    return entries


def classify(percent: int, threshold: int, warning: int) -> CheckStatus:
    if percent >= threshold:
        return CheckStatus.CRITICAL
    if percent >= warning:
        return CheckStatus.WARNING
    return CheckStatus.OK


def build_alert(entries: List[DiskUsage], threshold: int, warning: int, hostname: Optional[str] = None) -> Optional[Tuple[str, str]]:
    """(subject, body) for CRITICAL rows, else WARNING rows, else None."""
    hostname = hostname or socket.gethostname()
    critical = [e for e in entries if e.status == CheckStatus.CRITICAL]
    warnings = [e for e in entries if e.status == CheckStatus.WARNING]
    if critical:
        subject = f"DISK ALERT: {len(critical)} filesystems above {threshold}% threshold on {hostname}"
        rows = critical
    elif warnings:
        subject = f"DISK WARNING: {len(warnings)} filesystems above {warning}% threshold on {hostname}"
        rows = warnings
    else:
        return None
    body = "\n".join(f"{e.mount} ({e.filesystem}): {e.percent}% used, {format_bytes(e.avail_kb * 1024)} available" for e in rows)
    return subject, body


def render_report(entries: List[DiskUsage], show_header: bool = True) -> str:
    rows = [
        {
            "filesystem": e.filesystem,
            "size": format_bytes(e.size_kb * 1024),
            "used": format_bytes(e.used_kb * 1024),
            "avail": format_bytes(e.avail_kb * 1024),
            "percent": f"{e.percent}%",
            "mount": e.mount,
            "status": e.status.value,
        }
        for e in entries
    ]
    title = f"Disk Usage Report - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}" if show_header else ""
    return report_writer.render(
        rows,
        "text",
        ["filesystem", "size", "used", "avail", "percent", "mount", "status"],
        headers=HEADERS,
        title=title,
        show_header=show_header,
    )


class DiskUsageChecker:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def check(
        self,
        threshold: int = 90,
        warning: int = 80,
        include_mounts: Sequence[str] = (),
        exclude_mounts: Sequence[str] = (),
        include_types: Sequence[str] = (),
        exclude_types: Sequence[str] = (),
    ) -> List[DiskUsage]:
        if not (0 < warning <= 100 and 0 < threshold <= 100):
            raise ValidationError("Thresholds must be between 1 and 100")
        if warning > threshold:
            raise ValidationError(f"Warning level ({warning}%) cannot exceed the alert threshold ({threshold}%)")

        argv = ["df", "-P", "-k"]
        for fs_type in include_types:
            argv.extend(["-t", fs_type])
        for fs_type in exclude_types:
            argv.extend(["-x", fs_type])

        result = await self.runner.run(argv, timeout=30)
        # df exits 1 when some filesystem is unreadable but still prints the rest
        if not result.success and not result.stdout:
            raise CommandError(argv, result.exit_code, result.stderr)

        entries = []
        for entry in parse_df(result.stdout):
            if include_mounts and entry.mount not in include_mounts:
                continue
            if entry.mount in exclude_mounts:
                continue
            entry.status = classify(entry.percent, threshold, warning)
            entries.append(entry)

        for entry in entries:
            if entry.status == CheckStatus.CRITICAL:
                logger.error(f"{entry.mount} is {entry.percent}% full (threshold {threshold}%)")
            elif entry.status == CheckStatus.WARNING:
                logger.warning(f"{entry.mount} is {entry.percent}% full (warning {warning}%)")
        return entries
