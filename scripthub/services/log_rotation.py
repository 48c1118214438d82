"""
Log Rotation - copy-truncate rotation with numbered retention.

Backups are <name>.<YYYYmmdd-HHMMSS>[.gz] in the backup directory; the
live file is truncated in place so writers keep their handle.
"""

import gzip
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import RotationResult
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.rotation")

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def needs_rotation(path: Path, force: bool = False, max_size: Optional[int] = None) -> bool:
    if force:
        return True
    if max_size is None:
        return False
    return path.stat().st_size >= max_size


def list_backups(backup_dir: Path, log_name: str, compressed: bool) -> List[Path]:
    """Existing backups of log_name, oldest first."""
    suffix = r"\.gz" if compressed else ""
    pattern = re.compile(rf"^{re.escape(log_name)}\.\d{{8}}-\d{{6}}{suffix}$")
    return sorted(p for p in backup_dir.iterdir() if p.is_file() and pattern.match(p.name))


def rotate_log(
    log_file: str,
    num_backups: int = 5,
    compress: bool = False,
    max_size: Optional[int] = None,
    force: bool = False,
    backup_dir: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RotationResult:
    """
    Rotate log_file when forced or when it reached max_size.

    Raises:
        ValidationError: log file or backup directory is unusable
    """
    path = Path(log_file)
    if not path.is_file():
        raise ValidationError(f"Log file not found: {log_file}")
    if num_backups < 1:
        raise ValidationError("--num-backups must be at least 1")

    directory = Path(backup_dir) if backup_dir else path.parent
    directory.mkdir(parents=True, exist_ok=True)

    result = RotationResult(log_file=str(path))
    if not needs_rotation(path, force, max_size):
        logger.info(f"No rotation needed for {path}")
        return result

    backup = directory / f"{path.name}.{(now or datetime.now()).strftime(TIMESTAMP_FORMAT)}"
    shutil.copy2(path, backup)
    if compress:
        compressed = backup.with_name(backup.name + ".gz")
        with backup.open("rb") as src, gzip.open(compressed, "wb") as dst:
            shutil.copyfileobj(src, dst)
        backup.unlink()
        backup = compressed

    with path.open("w"):
        pass
    result.rotated = True
    result.backup_path = str(backup)
    log_success(logger, f"Rotated {path} -> {backup}")

    backups = list_backups(directory, path.name, compress)
    for old in backups[: max(0, len(backups) - num_backups)]:
        old.unlink()
        logger.info(f"Removed old backup: {old.name}")
        result.removed.append(str(old))
    return result
