"""
Backup - archive, copy or rsync a directory with age-based retention.

Backup names: <basename>[_YYYY-mm-dd_HH-MM-SS][.tar.gz]
"""

import fnmatch
import logging
import shutil
import tarfile
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from scripthub.errors import CommandError, ValidationError
from scripthub.schemas.models import BackupResult
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands
from scripthub.services.helpers.units import format_bytes
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.backup")

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def backup_name(source: str, timestamp: bool = False, compress: bool = False, now: Optional[datetime] = None) -> str:
    name = Path(source).resolve().name
    if timestamp:
        name += "_" + (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    if compress:
        name += ".tar.gz"
    return name


def is_excluded(relative_path: str, patterns: Sequence[str]) -> bool:
    name = Path(relative_path).name
    return any(
        fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(relative_path, pattern)
        for pattern in patterns
    )


def _path_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file() and not p.is_symlink())


def create_archive(source: Path, target: Path, excludes: Sequence[str]) -> None:
    root_name = source.name

    def tar_filter(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        relative = info.name[len(root_name):].lstrip("/")
        if relative and is_excluded(relative, excludes):
            return None
        return info

    with tarfile.open(target, "w:gz") as archive:
        archive.add(str(source), arcname=root_name, filter=tar_filter)


def copy_tree(source: Path, target: Path, excludes: Sequence[str]) -> None:
    if source.is_file():
        shutil.copy2(source, target)
        return
    ignore = shutil.ignore_patterns(*excludes) if excludes else None
    shutil.copytree(source, target, symlinks=True, ignore=ignore)


def cleanup_old_backups(destination: Path, base: str, retention_days: int, now: Optional[float] = None) -> List[str]:
    """Remove <base>_* entries in destination older than retention_days."""
    now = now if now is not None else time.time()
    cutoff = now - retention_days * 86400
    removed = []
    for entry in sorted(destination.glob(f"{base}_*")):
        if entry.stat().st_mtime >= cutoff:
            continue
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
        except OSError as e:
            logger.warning(f"Could not remove old backup {entry}: {e}")
            continue
        logger.info(f"Removed old backup: {entry.name}")
        removed.append(str(entry))
    return removed


class BackupService:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def backup(
        self,
        source: str,
        destination: str,
        compress: bool = False,
        timestamp: bool = False,
        incremental: bool = False,
        retention_days: int = 30,
        excludes: Sequence[str] = (),
    ) -> BackupResult:
        """
        Create one backup of source inside destination, then apply retention.

        Raises:
            ValidationError: source missing, or target already exists
            CommandError: rsync failed
        """
        src = Path(source).resolve()
        if not src.exists():
            raise ValidationError(f"Source not found: {source}")
        if compress and incremental:
            raise ValidationError("--compress and --incremental cannot be combined")

        dest = Path(destination)
        dest.mkdir(parents=True, exist_ok=True)

        name = backup_name(str(src), timestamp, compress)
        target = dest / name

        if compress:
            mode = "archive"
            logger.info(f"Creating compressed backup {target}")
            create_archive(src, target, excludes)
        elif incremental:
            mode = "incremental"
            require_commands("rsync")
            target.mkdir(parents=True, exist_ok=True)
            argv = ["rsync", "-a"]
            argv.extend(f"--exclude={pattern}" for pattern in excludes)
            argv.extend([f"{src}/" if src.is_dir() else str(src), f"{target}/"])
            logger.info(f"Synchronizing {src} -> {target}")
            result = await self.runner.run(argv, timeout=86400)
            if not result.success:
                raise CommandError(argv, result.exit_code, result.stderr)
        else:
            mode = "copy"
            if target.exists():
                raise ValidationError(f"Backup target already exists: {target} (use --timestamp)")
            logger.info(f"Copying {src} -> {target}")
            copy_tree(src, target, excludes)

        backup = BackupResult(source=str(src), path=str(target), mode=mode, size_bytes=_path_size(target))
        log_success(logger, f"Backup created: {target} ({format_bytes(backup.size_bytes)})")

        if retention_days > 0:
            backup.removed = [
                path for path in cleanup_old_backups(dest, src.name, retention_days)
                if path != str(target)
            ]
        return backup
