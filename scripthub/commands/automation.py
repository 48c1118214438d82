"""Automation commands: ssh-run, cleanup-logs, backup, update-packages, deploy-app."""

import argparse
import asyncio
import getpass
import logging
import sys

from scripthub.commands import confirm, non_negative_int, positive_int
from scripthub.errors import ValidationError
from scripthub.services import deploy, package_updater
from scripthub.services.backup import BackupService
from scripthub.services.command_runner import require_root
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.targets import load_lines
from scripthub.services.helpers.units import format_bytes, parse_size
from scripthub.services.log_cleanup import cleanup_logs
from scripthub.services.ssh_runner import SSHRunner, SSHRunOptions
from scripthub.shared.logging_utils import log_success, print_section

logger = logging.getLogger("scripthub.cli")


# ============================================================================
# ssh-run
# ============================================================================

def cmd_ssh_run(args: argparse.Namespace) -> int:
    hosts = list(args.host or [])
    if args.hosts:
        hosts.extend(load_lines(args.hosts))
    commands = list(args.command or [])
    if args.file:
        commands.extend(load_lines(args.file))

    options = SSHRunOptions(
        hosts=hosts,
        commands=commands,
        user=args.user or getpass.getuser(),
        identity=args.identity,
        parallel=args.parallel,
        timeout=args.timeout,
    )

    if args.output:
        with open(args.output, "a", encoding="utf-8") as handle:
            summary = asyncio.run(SSHRunner().run(options, output=handle))
        logger.info(f"Results written to {args.output}")
    else:
        summary = asyncio.run(SSHRunner().run(options, output=sys.stdout))

    print_section("Summary")
    print(f"Total tasks: {summary.total}")
    print(f"Completed:   {summary.completed}")
    print(f"Successful:  {summary.successful}")
    print(f"Failed:      {summary.failed}")
    return 0 if summary.failed == 0 else 1


# ============================================================================
# cleanup-logs
# ============================================================================

def cmd_cleanup_logs(args: argparse.Namespace) -> int:
    action = "compress" if args.compress else "truncate" if args.truncate else "remove"
    summary = cleanup_logs(
        args.path,
        action=action,
        extension=args.extension,
        age_days=args.age,
        min_size=parse_size(args.size) if args.size else None,
        recursive=args.recursive,
        dry_run=args.dry_run,
    )
    if summary.dry_run:
        logger.info(f"[DRY RUN] {len(summary.candidates)} file(s) would be processed")
        return 0
    log_success(logger, f"{summary.processed} file(s) processed ({format_bytes(summary.bytes_affected)}), {summary.failed} failed")
    return 0 if summary.failed == 0 else 1


# ============================================================================
# backup
# ============================================================================

def cmd_backup(args: argparse.Namespace) -> int:
    if args.compress and args.incremental:
        raise ValidationError("--compress and --incremental cannot be combined")
    result = asyncio.run(BackupService().backup(
        args.source,
        args.destination,
        compress=args.compress,
        timestamp=args.timestamp,
        incremental=args.incremental,
        retention_days=args.retention,
        excludes=args.exclude or [],
    ))
    if result.removed:
        logger.info(f"Removed {len(result.removed)} backup(s) older than {args.retention} days")
    return 0


# ============================================================================
# update-packages
# ============================================================================

def cmd_update_packages(args: argparse.Namespace) -> int:
    if not args.dry_run:
        require_root("Installing package updates")
    options = package_updater.UpdateOptions(
        dry_run=args.dry_run,
        security_only=args.security_only,
        excludes=args.exclude or [],
        reboot=args.reboot,
        log_file=args.log,
    )
    result = asyncio.run(package_updater.PackageUpdater().run(options, confirm=None if args.yes else confirm))

    if result.available and (args.dry_run or args.list):
        content = report_writer.render(
            result.available, "text", ["name", "current", "available", "repository"],
            title=f"Available updates ({result.package_manager})",
        )
        report_writer.write_output(content)
    return 0


# ============================================================================
# deploy-app
# ============================================================================

def cmd_deploy_app(args: argparse.Namespace) -> int:
    deployer = deploy.AppDeployer(
        args.source,
        args.destination,
        args.type,
        environment=args.env,
        verbose=args.verbose,
    )
    asyncio.run(deployer.deploy(backup=args.backup, clean=args.clean, restart=not args.no_restart))
    return 0


def register(subparsers: argparse._SubParsersAction) -> None:
    # -h is the hosts file here, so help is --help only
    ssh = subparsers.add_parser("ssh-run", help="Run commands on many hosts over SSH", add_help=False)
    ssh.add_argument("--help", action="help", help="show this help message and exit")
    ssh.add_argument("-h", "--hosts", metavar="FILE", help="file with one host per line")
    ssh.add_argument("-H", "--host", action="append", help="target host (repeatable)")
    ssh.add_argument("-c", "--command", action="append", help="command to run (repeatable)")
    ssh.add_argument("-f", "--file", metavar="FILE", help="file with one command per line")
    ssh.add_argument("-u", "--user", help="SSH user (default: current user)")
    ssh.add_argument("-i", "--identity", metavar="KEY", help="SSH private key")
    ssh.add_argument("-p", "--parallel", type=positive_int, default=5, help="concurrent connections (default: 5)")
    ssh.add_argument("-t", "--timeout", type=positive_int, default=10, help="connect timeout in seconds (default: 10)")
    ssh.add_argument("-o", "--output", metavar="FILE", help="append output blocks to FILE")
    ssh.set_defaults(handler=cmd_ssh_run)

    cleanup = subparsers.add_parser("cleanup-logs", help="Compress, truncate or remove old log files")
    cleanup.add_argument("path", help="log file or directory")
    cleanup.add_argument("-a", "--age", type=non_negative_int, default=30, help="minimum age in days, 0 for any (default: 30)")
    cleanup.add_argument("-s", "--size", help="only files larger than SIZE (e.g. 10M)")
    cleanup.add_argument("-e", "--extension", default="log", help="file extension (default: log)")
    cleanup.add_argument("-r", "--recursive", action="store_true", help="descend into subdirectories")
    action = cleanup.add_mutually_exclusive_group()
    action.add_argument("-c", "--compress", action="store_true", help="gzip instead of removing")
    action.add_argument("-t", "--truncate", action="store_true", help="truncate instead of removing")
    cleanup.add_argument("-d", "--dry-run", action="store_true", help="show what would be done")
    cleanup.set_defaults(handler=cmd_cleanup_logs)

    backup = subparsers.add_parser("backup", help="Back up a directory with retention")
    backup.add_argument("source")
    backup.add_argument("destination")
    backup.add_argument("-c", "--compress", action="store_true", help="create a .tar.gz archive")
    backup.add_argument("-t", "--timestamp", action="store_true", help="add a timestamp to the backup name")
    backup.add_argument("-i", "--incremental", action="store_true", help="rsync into the backup directory")
    backup.add_argument("-r", "--retention", type=non_negative_int, default=30, help="delete backups older than N days, 0 keeps all (default: 30)")
    backup.add_argument("-e", "--exclude", action="append", metavar="PATTERN", help="exclude pattern (repeatable)")
    backup.set_defaults(handler=cmd_backup)

    update = subparsers.add_parser("update-packages", help="List and install system package updates (apt, dnf or yum)")
    update.add_argument("-d", "--dry-run", action="store_true", help="only list available updates")
    update.add_argument("-s", "--security-only", action="store_true", help="only security updates")
    update.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    update.add_argument("-r", "--reboot", action="store_true", help="schedule a reboot when one is required")
    update.add_argument("-l", "--log", metavar="FILE", help="append package manager output to FILE")
    update.add_argument("-e", "--exclude", action="append", metavar="PACKAGE", help="never update PACKAGE (repeatable)")
    update.add_argument("--list", action="store_true", help="print the update list after installing")
    update.set_defaults(handler=cmd_update_packages)

    app = subparsers.add_parser("deploy-app", help="Deploy a static, Node.js, Python or PHP application")
    app.add_argument("-s", "--source", default=".", help="application directory (default: current directory)")
    app.add_argument("-d", "--destination", required=True)
    app.add_argument("-t", "--type", required=True, choices=deploy.APP_TYPES)
    app.add_argument("-e", "--env", choices=deploy.ENVIRONMENTS, default="dev")
    app.add_argument("-b", "--backup", action="store_true", help="copy the destination aside first")
    app.add_argument("-c", "--clean", action="store_true", help="empty the destination before copying")
    app.add_argument("-n", "--no-restart", action="store_true", help="do not restart the application")
    app.add_argument("-v", "--verbose", action="store_true", help="show installer output")
    app.set_defaults(handler=cmd_deploy_app)
