"""
Log Cleanup - compress, truncate or remove old log files.
"""

import gzip
import logging
import shutil
import time
from pathlib import Path
from typing import Iterator, List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import CleanupSummary
from scripthub.services.helpers.units import format_bytes

logger = logging.getLogger("scripthub.cleanup")

ACTIONS = ("remove", "compress", "truncate")


def _walk(root: Path, recursive: bool) -> Iterator[Path]:
    if root.is_file():
        yield root
        return
    iterator = root.rglob("*") if recursive else root.iterdir()
    for path in iterator:
        if path.is_file() and not path.is_symlink():
            yield path


def find_candidates(
    path: str,
    extension: str = "log",
    age_days: int = 30,
    min_size: Optional[int] = None,
    recursive: bool = False,
    now: Optional[float] = None,
) -> List[Path]:
    """
    Files named *.EXT older than age_days and larger than min_size.

    age_days of 0 disables the age filter.
    """
    root = Path(path)
    if not root.exists():
        raise ValidationError(f"Path not found: {path}")

    now = now if now is not None else time.time()
    suffix = "." + extension.lstrip(".")
    cutoff = now - age_days * 86400

    candidates = []
    for file_path in _walk(root, recursive):
        if not file_path.name.endswith(suffix):
            continue
        stat = file_path.stat()
        if age_days > 0 and stat.st_mtime >= cutoff:
            continue
        if min_size is not None and stat.st_size <= min_size:
            continue
        candidates.append(file_path)
    return sorted(candidates)


def compress_file(path: Path) -> Path:
    target = path.with_name(path.name + ".gz")
    with path.open("rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)
    shutil.copystat(path, target)
    path.unlink()
    return target


def cleanup_logs(
    path: str,
    action: str = "remove",
    extension: str = "log",
    age_days: int = 30,
    min_size: Optional[int] = None,
    recursive: bool = False,
    dry_run: bool = False,
) -> CleanupSummary:
    """Apply action to every candidate file; one failure does not stop the rest."""
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action '{action}'")

    candidates = find_candidates(path, extension, age_days, min_size, recursive)
    summary = CleanupSummary(action=action, dry_run=dry_run, candidates=[str(p) for p in candidates])

    criteria = [f"extension .{extension.lstrip('.')}"]
    if age_days > 0:
        criteria.append(f"older than {age_days} days")
    if min_size is not None:
        criteria.append(f"larger than {format_bytes(min_size)}")
    logger.info(f"Found {len(candidates)} file(s) in {path} ({', '.join(criteria)})")

    for file_path in candidates:
        if dry_run:
            logger.info(f"[DRY RUN] Would {action}: {file_path}")
            continue
        try:
            size = file_path.stat().st_size
            if action == "compress":
                target = compress_file(file_path)
                logger.info(f"Compressed: {file_path} -> {target.name}")
            elif action == "truncate":
                with file_path.open("w"):
                    pass
                logger.info(f"Truncated: {file_path}")
            else:
                file_path.unlink()
                logger.info(f"Removed: {file_path}")
        except OSError as e:
            logger.error(f"Failed to {action} {file_path}: {e}")
            summary.failed += 1
            continue
        summary.processed += 1
        summary.bytes_affected += size

    return summary
