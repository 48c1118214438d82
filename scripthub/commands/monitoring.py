"""Monitoring commands: disk-usage, http-check, ssl-expiry, resource-monitor, service-check."""

import argparse
import asyncio
import logging
import os
import socket

from scripthub.commands import notifier_from_args, percent, positive_int
from scripthub.schemas.models import CheckStatus
from scripthub.services import disk_usage, http_checker, resource_monitor, service_checker, ssl_expiry
from scripthub.services.helpers import report_writer
from scripthub.services.notifier import Notifier, NotifierConfig

logger = logging.getLogger("scripthub.cli")


# ============================================================================
# disk-usage
# ============================================================================

def cmd_disk_usage(args: argparse.Namespace) -> int:
    entries = asyncio.run(disk_usage.DiskUsageChecker().check(
        threshold=args.threshold,
        warning=args.warning,
        include_mounts=args.filesystem or [],
        exclude_mounts=args.exclude or [],
        include_types=args.include_type or [],
        exclude_types=args.exclude_type or [],
    ))
    if not entries:
        logger.warning("No filesystems matched the given filters")
        return 0

    shown = [e for e in entries if e.status != CheckStatus.OK] if args.quiet else entries
    if shown or not args.quiet:
        content = disk_usage.render_report(shown, show_header=not args.no_header)
        report_writer.write_output(content, args.output, append=args.append)

    alert = disk_usage.build_alert(entries, args.threshold, args.warning)
    if alert:
        notifier = notifier_from_args(args)
        if notifier:
            asyncio.run(notifier.send(*alert))
    return 1 if any(e.status != CheckStatus.OK for e in entries) else 0


# ============================================================================
# http-check
# ============================================================================

def cmd_http_check(args: argparse.Namespace) -> int:
    options = http_checker.HttpCheckOptions(
        method=args.method,
        data=args.data,
        headers=http_checker.parse_headers(args.header),
        auth=args.user,
        timeout=args.timeout,
        retries=args.retries,
        expected=http_checker.parse_expected(args.expect),
        pattern=args.pattern,
        insecure=args.insecure,
        max_time=args.time,
    )
    results = asyncio.run(http_checker.HttpChecker().check(args.urls, options))

    shown = [r for r in results if r.status != CheckStatus.OK] if args.quiet else results
    if shown or args.format != "text":
        fmt = "text" if args.format == "text" else args.format
        content = report_writer.render(shown, fmt, http_checker.COLUMNS)
        report_writer.write_output(content, args.output, append=args.append)
    return 0 if all(r.status == CheckStatus.OK for r in results) else 1


# ============================================================================
# ssl-expiry
# ============================================================================

def cmd_ssl_expiry(args: argparse.Namespace) -> int:
    domains = list(args.domain or [])
    files = list(args.file or [])
    for item in args.targets or []:
        (files if os.path.isfile(item) else domains).append(item)

    checker = ssl_expiry.SSLExpiryChecker(timeout=args.timeout)
    certs = asyncio.run(checker.check(domains, files, port=args.port, warning=args.warning, critical=args.critical))

    shown = [c for c in certs if c.status != CheckStatus.OK] if args.quiet else certs
    if shown or args.format != "text":
        content = report_writer.render(shown, args.format, ssl_expiry.COLUMNS, title="SSL Certificate Expiry")
        report_writer.write_output(content, args.output, append=args.append)

    problems = [c for c in certs if c.status != CheckStatus.OK]
    if problems:
        notifier = notifier_from_args(args)
        if notifier:
            worst = "CRITICAL" if any(c.status == CheckStatus.CRITICAL for c in problems) else "WARNING"
            subject = f"SSL certificate {worst}: {len(problems)} certificate(s) need attention on {socket.gethostname()}"
            asyncio.run(notifier.send(subject, ssl_expiry.alert_body(problems)))
        return 1
    return 0


# ============================================================================
# resource-monitor
# ============================================================================

def cmd_resource_monitor(args: argparse.Namespace) -> int:
    monitor = resource_monitor.ResourceMonitor(args.interval, args.cpu_threshold, args.mem_threshold)
    fmt = args.format
    state = {"header": not args.no_header, "written": False}

    def emit(sample):
        if args.quiet and sample.status == CheckStatus.OK:
            return
        if fmt == "json":
            content = sample.model_dump_json()
        else:
            content = report_writer.render(
                [sample], "csv" if fmt == "csv" else "text", resource_monitor.COLUMNS, show_header=state["header"]
            )
        report_writer.write_output(content, args.output, append=args.append or state["written"])
        state["header"] = False
        state["written"] = True

    try:
        asyncio.run(monitor.run(args.count, emit))
    except KeyboardInterrupt:
        logger.info("Monitoring stopped")
    return 1 if monitor.alerted else 0


# ============================================================================
# service-check
# ============================================================================

def cmd_service_check(args: argparse.Namespace) -> int:
    checker = service_checker.ServiceChecker()
    statuses = asyncio.run(checker.check(args.services, args.action, args.wait, args.max_attempts))

    shown = [s for s in statuses if s.status != CheckStatus.OK] if args.quiet else statuses
    if shown or args.format != "text":
        content = report_writer.render(shown, args.format, service_checker.COLUMNS)
        report_writer.write_output(content, args.output)

    failed = [s for s in statuses if s.status != CheckStatus.OK]
    if failed and args.email:
        body = "\n".join(f"{s.name}: {s.state} (attempts: {s.attempts})" for s in failed)
        subject = f"Service alert: {len(failed)} service(s) down on {socket.gethostname()}"
        asyncio.run(Notifier(NotifierConfig(email=args.email)).send(subject, body))
    return 1 if failed else 0


def register(subparsers: argparse._SubParsersAction) -> None:
    disk = subparsers.add_parser("disk-usage", help="Alert on filesystems above a usage threshold")
    disk.add_argument("-t", "--threshold", type=percent, default=90, help="critical level in percent (default: 90)")
    disk.add_argument("-w", "--warning", type=percent, default=80, help="warning level in percent (default: 80)")
    disk.add_argument("-f", "--filesystem", action="append", metavar="MOUNT", help="only check this mount point")
    disk.add_argument("-e", "--exclude", action="append", metavar="MOUNT", help="skip this mount point")
    disk.add_argument("-i", "--include-type", action="append", metavar="TYPE")
    disk.add_argument("-x", "--exclude-type", action="append", metavar="TYPE")
    disk.add_argument("-m", "--mail", dest="email", help="e-mail alerts to this address")
    disk.add_argument("-s", "--slack", metavar="WEBHOOK", help="send alerts to a Slack webhook")
    disk.add_argument("-o", "--output", metavar="FILE")
    disk.add_argument("-a", "--append", action="store_true")
    disk.add_argument("-n", "--no-header", action="store_true")
    disk.add_argument("-q", "--quiet", action="store_true", help="only show filesystems above the warning level")
    disk.set_defaults(handler=cmd_disk_usage)

    http = subparsers.add_parser("http-check", help="Check HTTP status, content and response time")
    http.add_argument("urls", nargs="+")
    http.add_argument("-m", "--method", default="GET")
    http.add_argument("-d", "--data", help="request body")
    http.add_argument("-H", "--header", action="append", help="'Name: value' (repeatable)")
    http.add_argument("-u", "--user", metavar="USER:PASS", help="basic auth credentials")
    http.add_argument("-t", "--timeout", type=float, default=10.0)
    http.add_argument("-r", "--retries", type=int, default=1, help="retries on connection errors (default: 1)")
    http.add_argument("-e", "--expect", default="200", help="expected status codes, comma-separated")
    http.add_argument("-p", "--pattern", help="regex the body must match")
    http.add_argument("-i", "--insecure", action="store_true", help="skip TLS verification")
    http.add_argument("-s", "--time", type=float, metavar="SECONDS", help="maximum acceptable response time")
    http.add_argument("-o", "--output", metavar="FILE")
    http.add_argument("-a", "--append", action="store_true")
    http.add_argument("-f", "--format", choices=("text", "csv", "json"), default="text")
    http.add_argument("-q", "--quiet", action="store_true")
    http.add_argument("-v", "--verbose", action="store_true")
    http.set_defaults(handler=cmd_http_check)

    ssl = subparsers.add_parser("ssl-expiry", help="Check SSL certificate expiry for domains and files")
    ssl.add_argument("targets", nargs="*", help="domains or certificate files")
    ssl.add_argument("-d", "--domain", action="append")
    ssl.add_argument("-f", "--file", action="append")
    ssl.add_argument("-p", "--port", type=positive_int, default=443)
    ssl.add_argument("-w", "--warning", type=int, default=30, help="warning threshold in days (default: 30)")
    ssl.add_argument("-c", "--critical", type=int, default=7, help="critical threshold in days (default: 7)")
    ssl.add_argument("-t", "--timeout", type=positive_int, default=10)
    ssl.add_argument("-o", "--output", metavar="FILE")
    ssl.add_argument("-a", "--append", action="store_true")
    ssl.add_argument("-m", "--mail", dest="email")
    ssl.add_argument("-s", "--slack", metavar="WEBHOOK")
    ssl.add_argument("--format", choices=("text", "csv", "json"), default="text")
    ssl.add_argument("-q", "--quiet", action="store_true")
    ssl.add_argument("-v", "--verbose", action="store_true")
    ssl.set_defaults(handler=cmd_ssl_expiry)

    res = subparsers.add_parser("resource-monitor", help="Sample CPU, memory, swap and load")
    res.add_argument("-i", "--interval", type=float, default=5.0)
    res.add_argument("-c", "--count", type=positive_int, help="number of samples (default: until interrupted)")
    res.add_argument("-t", "--cpu-threshold", type=percent, default=80)
    res.add_argument("-m", "--mem-threshold", type=percent, default=80)
    res.add_argument("-f", "--format", choices=("table", "csv", "json"), default="table")
    res.add_argument("-o", "--output", metavar="FILE")
    res.add_argument("-a", "--append", action="store_true")
    res.add_argument("-n", "--no-header", action="store_true")
    res.add_argument("-q", "--quiet", action="store_true", help="only print samples above a threshold")
    res.set_defaults(handler=cmd_resource_monitor)

    svc = subparsers.add_parser("service-check", help="Check services and optionally restart them")
    svc.add_argument("services", nargs="+")
    svc.add_argument("-a", "--action", choices=service_checker.ACTIONS, default="none")
    svc.add_argument("-w", "--wait", type=float, default=5.0, help="seconds to wait after each action")
    svc.add_argument("-m", "--max-attempts", type=positive_int, default=3)
    svc.add_argument("-f", "--format", choices=("text", "csv", "json"), default="text")
    svc.add_argument("-o", "--output", metavar="FILE")
    svc.add_argument("-e", "--email")
    svc.add_argument("-q", "--quiet", action="store_true")
    svc.set_defaults(handler=cmd_service_check)

