"""Security commands: file-integrity, failed-logins, password-policy."""

import argparse
import asyncio
import logging
import socket

from scripthub.commands import non_negative_int, notifier_from_args, positive_int, split_csv
from scripthub.errors import ValidationError
from scripthub.schemas.models import IntegrityReport
from scripthub.services import failed_logins, password_policy
from scripthub.services.file_integrity import ALGORITHMS, FileIntegrityChecker, summary_text
from scripthub.services.helpers import report_writer

logger = logging.getLogger("scripthub.cli")

CHANGE_COLUMNS = ["kind", "path", "old_hash", "new_hash"]


# ============================================================================
# file-integrity
# ============================================================================

def _integrity_report(report: IntegrityReport, fmt: str, summary_only: bool) -> str:
    if summary_only or fmt == "text":
        return summary_text(report)
    if fmt == "json":
        return report.model_dump_json(indent=2)
    return report_writer.render(report.changes, "csv", CHANGE_COLUMNS)


def cmd_file_integrity(args: argparse.Namespace) -> int:
    modes = [flag for flag in ("init", "check", "monitor") if getattr(args, flag)]
    if len(modes) != 1:
        raise ValidationError("Choose exactly one of --init, --check or --monitor")

    checker = FileIntegrityChecker(
        args.database,
        split_csv(args.paths),
        algorithm=args.algorithm,
        recursive=args.recursive,
        excludes=split_csv(args.exclude),
    )

    if args.init:
        checker.initialize(backup=args.backup)
        return 0

    def emit(report: IntegrityReport) -> None:
        if args.summary or args.report or args.format != "text":
            content = _integrity_report(report, args.format, args.summary)
            report_writer.write_output(content, args.report, append=bool(args.report))

    if args.monitor:
        logger.info(f"Monitoring {len(checker.paths)} path(s) every {args.interval}s")
        try:
            asyncio.run(checker.monitor(args.interval, args.log, args.notify, on_report=emit))
        except KeyboardInterrupt:
            logger.info("Monitoring stopped")
        return 0

    report = checker.check(args.log)
    if report.changes and args.notify:
        asyncio.run(checker.notify(args.notify, report))
    emit(report)
    return 1 if report.changes else 0


# ============================================================================
# failed-logins
# ============================================================================

def cmd_failed_logins(args: argparse.Namespace) -> int:
    monitor = failed_logins.FailedLoginMonitor(
        log_file=args.log_file,
        threshold=args.threshold,
        period_minutes=args.period,
        pattern=args.filter,
        whitelist=failed_logins.load_whitelist(args.whitelist),
        block=args.block_ip,
        block_threshold=args.block_threshold,
        notifier=notifier_from_args(args),
    )
    hostname = socket.gethostname()

    if args.daemon:
        try:
            asyncio.run(monitor.run_daemon(hostname, args.interval, args.report))
        except KeyboardInterrupt:
            logger.info("Monitoring stopped")
        return 0

    report = asyncio.run(monitor.run_once(hostname, args.report))
    if report.offenders:
        print(failed_logins.offenders_table(report.offenders))
    return 1 if report.alerts else 0


# ============================================================================
# password-policy
# ============================================================================

def _policy_from_args(args: argparse.Namespace) -> password_policy.PasswordPolicy:
    policy = password_policy.PasswordPolicy()
    if args.policy_file:
        policy = password_policy.load_policy_file(args.policy_file, policy)
    # explicit flags win over the policy file
    for field in ("min_days", "max_days", "warn_days", "inactive_days"):
        value = getattr(args, field)
        if value is not None:
            setattr(policy, field, value)
    return policy


def cmd_password_policy(args: argparse.Namespace) -> int:
    policy = _policy_from_args(args)
    checker = password_policy.PasswordPolicyChecker(policy)

    async def audit():
        users = await checker.select_users(split_csv(args.users), split_csv(args.groups), args.all, args.system)
        return await checker.check(users)

    audits = asyncio.run(audit())
    if not audits:
        logger.warning("No accounts to check")
        return 0

    failing = [a for a in audits if not a.compliant]
    shown = audits if args.verbose or args.json else failing
    content = password_policy.render_report(shown, policy, "json" if args.json else "text")
    if args.report:
        report_writer.write_output(content, args.report)
        logger.info(f"Report written to {args.report}")
    elif shown:
        report_writer.write_output(content)

    if failing:
        logger.warning(f"{len(failing)} of {len(audits)} account(s) do not comply with the password policy")
        return 1
    logger.info(f"All {len(audits)} account(s) comply with the password policy")
    return 0


def register(subparsers: argparse._SubParsersAction) -> None:
    fim = subparsers.add_parser("file-integrity", help="Record and verify file hashes")
    fim.add_argument("-p", "--paths", required=True, help="comma-separated files or directories")
    fim.add_argument("-d", "--database", default="file_hashes.db")
    fim.add_argument("-a", "--algorithm", choices=ALGORITHMS, default="sha256")
    fim.add_argument("-i", "--init", action="store_true", help="create the hash database")
    fim.add_argument("-c", "--check", action="store_true", help="compare files against the database")
    fim.add_argument("-m", "--monitor", action="store_true", help="check repeatedly until interrupted")
    fim.add_argument("-r", "--recursive", action="store_true")
    fim.add_argument("-e", "--exclude", help="comma-separated fnmatch patterns")
    fim.add_argument("-t", "--interval", type=positive_int, default=300, help="monitor interval in seconds (default: 300)")
    fim.add_argument("-n", "--notify", metavar="CMD", help="command run with the summary on stdin when files change")
    fim.add_argument("-l", "--log", default="file_changes.log", help="change log file (default: file_changes.log)")
    fim.add_argument("-s", "--summary", action="store_true", help="print a summary of the check")
    fim.add_argument("-R", "--report", metavar="FILE", help="append the report to FILE")
    fim.add_argument("-f", "--format", choices=("text", "csv", "json"), default="text")
    fim.add_argument("-b", "--backup", action="store_true", help="keep a copy of the old database on --init")
    fim.set_defaults(handler=cmd_file_integrity)

    fl = subparsers.add_parser("failed-logins", help="Report and block IPs with repeated failed logins")
    fl.add_argument("-l", "--log-file", help="auth log (default: auto-detected)")
    fl.add_argument("-t", "--threshold", type=positive_int, default=5)
    fl.add_argument("-p", "--period", type=int, default=10, metavar="MINUTES", help="look-back window, 0 for the whole log")
    fl.add_argument("-f", "--filter", default=failed_logins.DEFAULT_FILTER, metavar="REGEX")
    fl.add_argument("-e", "--email")
    fl.add_argument("-S", "--slack-webhook", dest="slack")
    fl.add_argument("-T", "--telegram-token")
    fl.add_argument("-C", "--telegram-chat-id")
    fl.add_argument("-W", "--webhook-url")
    fl.add_argument("-b", "--block-ip", action="store_true", help="block offenders with the firewall")
    fl.add_argument("-B", "--block-threshold", type=positive_int, default=10)
    fl.add_argument("--whitelist", metavar="FILE", help="IPs that are never reported")
    fl.add_argument("-r", "--report", metavar="FILE", help="append alerts to FILE")
    fl.add_argument("-d", "--daemon", action="store_true", help="repeat the scan every --interval seconds")
    fl.add_argument("-i", "--interval", type=positive_int, default=300)
    fl.set_defaults(handler=cmd_failed_logins)

    pp = subparsers.add_parser("password-policy", help="Audit password aging of local accounts (read-only)")
    pp.add_argument("-u", "--users", help="comma-separated accounts")
    pp.add_argument("-g", "--groups", help="comma-separated groups whose members are checked")
    pp.add_argument("-a", "--all", action="store_true", help="every login account (default without -u/-g)")
    pp.add_argument("-s", "--system", action="store_true", help="include system accounts (UID < 1000)")
    pp.add_argument("-m", "--min-days", dest="min_days", type=non_negative_int, help="required minimum password age (default: 1)")
    pp.add_argument("-M", "--max-days", dest="max_days", type=positive_int, help="allowed maximum password age (default: 90)")
    pp.add_argument("-w", "--warn-days", dest="warn_days", type=non_negative_int, help="required warning period (default: 7)")
    pp.add_argument("-i", "--inactive-days", dest="inactive_days", type=non_negative_int, help="allowed inactivity period (default: 30)")
    pp.add_argument("-p", "--policy-file", metavar="FILE", help="KEY=VALUE file (MIN_PASS_DAYS, MAX_PASS_DAYS, PASS_WARN_DAYS, PASS_INACTIVE_DAYS)")
    pp.add_argument("-r", "--report", metavar="FILE", help="write the report to FILE")
    pp.add_argument("-j", "--json", action="store_true", help="JSON report")
    pp.add_argument("-v", "--verbose", action="store_true", help="include compliant accounts in the report")
    pp.set_defaults(handler=cmd_password_policy)
