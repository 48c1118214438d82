"""
File Integrity Checker - hash database creation and change detection.

Database format (text, one entry per line):

    # File Integrity Database
    # Created: 2024-01-01 12:00:00
    # Algorithm: sha256
    # Format: HASH  PATH
    <hex digest>  <absolute path>
"""

import asyncio
import fnmatch
import hashlib
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from scripthub.errors import ValidationError
from scripthub.schemas.models import IntegrityChange, IntegrityReport
from scripthub.services.command_runner import CommandRunner, get_command_runner
from scripthub.shared.logging_utils import log_success

logger = logging.getLogger("scripthub.integrity")

ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
CHUNK_SIZE = 1024 * 1024


def hash_file(path: Path, algorithm: str = "sha256") -> str:
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_excluded(path: Path, patterns: Sequence[str]) -> bool:
    text = str(path)
    return any(fnmatch.fnmatch(text, p) or fnmatch.fnmatch(path.name, p) for p in patterns)


def iter_files(paths: Sequence[str], recursive: bool = False, excludes: Sequence[str] = ()) -> Iterator[Path]:
    """Regular files under paths; directories are only descended with recursive."""
    for raw in paths:
        root = Path(raw).resolve()
        if root.is_file():
            if not is_excluded(root, excludes):
                yield root
            continue
        if not root.is_dir():
            logger.warning(f"Path not found: {raw}")
            continue
        candidates = root.rglob("*") if recursive else root.iterdir()
        for path in sorted(candidates):
            if path.is_file() and not path.is_symlink() and not is_excluded(path, excludes):
                yield path


def read_database(db_path: Path) -> Dict[str, str]:
    """path -> hash; comment and blank lines are skipped."""
    entries = {}
    for line in db_path.read_text(encoding="utf-8").splitlines():
        if not line.strip() or line.startswith("#"):
            continue
        digest, sep, path = line.partition("  ")
        if not sep:
            logger.warning(f"Skipping malformed database line: {line}")
            continue
        entries[path] = digest
    return entries


def database_algorithm(db_path: Path) -> Optional[str]:
    for line in db_path.read_text(encoding="utf-8").splitlines():
        if line.startswith("# Algorithm:"):
            return line.split(":", 1)[1].strip()
        if not line.startswith("#"):
            break
    return None


def write_database(db_path: Path, hashes: Dict[str, str], algorithm: str) -> None:
    lines = [
        "# File Integrity Database",
        f"# Created: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"# Algorithm: {algorithm}",
        "# Format: HASH  PATH",
    ]
    lines.extend(f"{digest}  {path}" for path, digest in sorted(hashes.items()))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def compare(baseline: Dict[str, str], current: Dict[str, str]) -> List[IntegrityChange]:
    changes = []
    for path, digest in sorted(current.items()):
        if path not in baseline:
            changes.append(IntegrityChange(kind="NEW", path=path, new_hash=digest))
        elif baseline[path] != digest:
            changes.append(IntegrityChange(kind="MODIFIED", path=path, old_hash=baseline[path], new_hash=digest))
    for path, digest in sorted(baseline.items()):
        if path not in current and not Path(path).is_file():
            changes.append(IntegrityChange(kind="MISSING", path=path, old_hash=digest))
    return changes


def change_line(change: IntegrityChange, when: datetime) -> str:
    stamp = when.strftime("%Y-%m-%d %H:%M:%S")
    if change.kind == "MODIFIED":
        return f"{stamp} - MODIFIED: {change.path} (Old: {change.old_hash}, New: {change.new_hash})"
    return f"{stamp} - {change.kind}: {change.path}"


def summary_text(report: IntegrityReport) -> str:
    lines = [
        f"File integrity check at {report.checked_at:%Y-%m-%d %H:%M:%S} ({report.algorithm})",
        f"Files checked: {report.total}",
        f"New: {report.count('NEW')}  Modified: {report.count('MODIFIED')}  Missing: {report.count('MISSING')}",
    ]
    for change in report.changes:
        lines.append(f"  {change.kind}: {change.path}")
    return "\n".join(lines)


class FileIntegrityChecker:
    def __init__(
        self,
        database: str,
        paths: Sequence[str],
        algorithm: str = "sha256",
        recursive: bool = False,
        excludes: Sequence[str] = (),
        runner: Optional[CommandRunner] = None,
    ):
        if algorithm not in ALGORITHMS:
            raise ValidationError(f"Unsupported algorithm '{algorithm}' (use {', '.join(ALGORITHMS)})")
        if not paths:
            raise ValidationError("No paths specified")
        self.database = Path(database)
        self.paths = list(paths)
        self.algorithm = algorithm
        self.recursive = recursive
        self.excludes = list(excludes)
        self.runner = runner or get_command_runner()

    def scan(self) -> Dict[str, str]:
        hashes = {}
        for path in iter_files(self.paths, self.recursive, self.excludes):
            try:
                hashes[str(path)] = hash_file(path, self.algorithm)
            except OSError as e:
                logger.warning(f"Cannot read {path}: {e}")
        return hashes

    def initialize(self, backup: bool = False) -> int:
        """Write a fresh database; returns the number of files recorded."""
        if backup and self.database.exists():
            backup_path = self.database.with_name(f"{self.database.name}.{datetime.now():%Y%m%d%H%M%S}.bak")
            shutil.copy2(self.database, backup_path)
            logger.info(f"Database backed up to {backup_path}")
        hashes = self.scan()
        write_database(self.database, hashes, self.algorithm)
        log_success(logger, f"Database initialized with {len(hashes)} file(s): {self.database}")
        return len(hashes)

    def check(self, change_log: Optional[str] = None) -> IntegrityReport:
        if not self.database.is_file():
            raise ValidationError(f"Database not found: {self.database} (run with --init first)")
        stored_algorithm = database_algorithm(self.database)
        if stored_algorithm and stored_algorithm != self.algorithm:
            logger.warning(f"Database uses {stored_algorithm}; checking with {stored_algorithm} instead of {self.algorithm}")
            self.algorithm = stored_algorithm

        baseline = read_database(self.database)
        current = self.scan()
        report = IntegrityReport(
            checked_at=datetime.now(),
            algorithm=self.algorithm,
            total=len(set(baseline) | set(current)),
            changes=compare(baseline, current),
        )

        for change in report.changes:
            logger.warning(f"{change.kind}: {change.path}")
        if not report.changes:
            log_success(logger, f"No changes detected in {report.total} file(s)")

        if change_log and report.changes:
            with open(change_log, "a", encoding="utf-8") as handle:
                for change in report.changes:
                    handle.write(change_line(change, report.checked_at) + "\n")
        return report

    async def notify(self, command: str, report: IntegrityReport) -> None:
        """Run the notify command through sh with the summary on stdin."""
        result = await self.runner.run(["sh", "-c", command], input=summary_text(report), timeout=60)
        if not result.success:
            logger.warning(f"Notify command failed (exit code {result.exit_code}): {result.stderr}")

    async def monitor(
        self,
        interval: float,
        change_log: Optional[str] = None,
        notify_command: Optional[str] = None,
        on_report: Optional[Callable[[IntegrityReport], None]] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Repeat check() every interval seconds until interrupted."""
        done = 0
        while iterations is None or done < iterations:
            report = self.check(change_log)
            if report.changes and notify_command:
                await self.notify(notify_command, report)
            if on_report:
                on_report(report)
            done += 1
            if iterations is None or done < iterations:
                await asyncio.sleep(interval)
