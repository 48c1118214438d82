"""Networking commands: port-scan, bandwidth, dns-latency, blacklist, firewall-report."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime

import psutil

from scripthub.commands import notifier_from_args, positive_int, split_csv
from scripthub.errors import ValidationError
from scripthub.services import bandwidth_monitor, blacklist_checker, dns_latency, firewall_report, port_scanner
from scripthub.services.command_runner import require_root
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.targets import expand_targets, load_lines, parse_ports
from scripthub.shared.logging_utils import print_header, progress_bar

logger = logging.getLogger("scripthub.cli")


# ============================================================================
# port-scan
# ============================================================================

PROGRESS_LOG_EVERY = 10


def scan_progress(quiet: bool, verbose: bool, tty: bool):
    """Progress callback: a bar on a terminal, otherwise a log line every few checks."""
    if quiet:
        return None
    if tty:
        return lambda done, total: progress_bar(done, total, "ports")

    def log_progress(done: int, total: int) -> None:
        if verbose or done % PROGRESS_LOG_EVERY == 0 or done == total:
            logger.info(f"Progress: {done}/{total} ports checked")

    return log_progress


def cmd_port_scan(args: argparse.Namespace) -> int:
    raw_targets = list(args.targets or [])
    if args.input:
        raw_targets.extend(load_lines(args.input))
    targets = expand_targets(raw_targets)
    if not targets:
        raise ValidationError("No targets specified")

    ports = parse_ports(args.ports or "")
    options = port_scanner.ScanOptions(
        targets=targets,
        ports=ports,
        timeout=args.timeout,
        threads=args.threads,
        scan_type=args.scan_type,
        banner=args.banner,
        wait_ms=args.wait,
        resolvers=port_scanner.load_resolvers(args.resolvers) if args.resolvers else [],
        no_resolve=args.no_resolve,
        quiet=args.quiet,
    )

    progress = scan_progress(args.quiet, args.verbose, sys.stderr.isatty())
    scan_time = datetime.now()
    results = asyncio.run(port_scanner.PortScanner().scan(options, progress))

    fmt = "json" if args.json else "csv" if args.csv else "xml" if args.xml else "zenmap" if args.zenmap else "text"
    if fmt != "text" or args.output or not args.quiet:
        content = port_scanner.render_results(results, fmt, targets, ports, scan_time)
        report_writer.write_output(content, args.output)
    return 0


# ============================================================================
# bandwidth
# ============================================================================

def cmd_bandwidth(args: argparse.Namespace) -> int:
    available = list(psutil.net_io_counters(pernic=True).keys())
    interfaces = bandwidth_monitor.resolve_interfaces(args.interface, available)

    monitor = bandwidth_monitor.BandwidthMonitor(
        interfaces,
        interval=args.time,
        stat=args.stat,
        alert_mbps=args.alert,
        notifier=notifier_from_args(args),
        log_file=args.log,
    )

    peaks = {}

    def show(sample, tracker):
        if args.quiet:
            return
        peak = None
        if args.bar:
            current = bandwidth_monitor.selected_mbps(sample, args.stat)
            peaks[sample.interface] = max(peaks.get(sample.interface, 0.0), current)
            peak = peaks[sample.interface]
        print(f"{sample.timestamp:%H:%M:%S} {bandwidth_monitor.format_sample(sample, args.stat, args.unit, peak)}", flush=True)

    if not args.quiet:
        logger.info(f"Monitoring {', '.join(interfaces)} every {args.time:g}s (Ctrl+C to stop)")
    try:
        asyncio.run(monitor.run(args.duration, show))
    except KeyboardInterrupt:
        logger.info("Monitoring stopped")

    if args.report or args.peak:
        print(bandwidth_monitor.format_report(monitor.reports(), show_peak=args.peak))
    return 1 if monitor.alerts else 0


# ============================================================================
# dns-latency
# ============================================================================

def cmd_dns_latency(args: argparse.Namespace) -> int:
    nameservers = split_csv(args.nameservers)
    if args.public_resolvers:
        nameservers.extend(ns for ns in dns_latency.PUBLIC_RESOLVERS if ns not in nameservers)

    results = asyncio.run(dns_latency.DNSLatencyChecker().check(
        args.domains,
        nameservers or None,
        record_type=args.record,
        count=args.count,
        timeout=args.timeout,
        wait_ms=args.wait,
        sort_by=args.sort,
    ))

    if args.format == "table":
        rows = [dict(r.model_dump(), nameserver=dns_latency.nameserver_label(r.nameserver)) for r in results]
        content = report_writer.render(rows, "text", dns_latency.COLUMNS, headers=dns_latency.CSV_HEADERS, title="DNS Latency Results")
    elif args.format == "csv":
        content = report_writer.render(results, "csv", dns_latency.COLUMNS, headers=dns_latency.CSV_HEADERS)
    else:
        content = report_writer.render(results, "json", dns_latency.COLUMNS)
    report_writer.write_output(content, args.output)
    return 0 if all(r.successful for r in results) else 1


# ============================================================================
# blacklist
# ============================================================================

def cmd_blacklist(args: argparse.Namespace) -> int:
    targets = list(args.targets or []) + list(args.ip or []) + list(args.domain or [])
    if args.file:
        targets.extend(load_lines(args.file))

    categories = [name for name in ("mail", "spam", "proxy") if getattr(args, name)] or ["all"]
    if args.all:
        categories = ["all"]
    zones = blacklist_checker.select_blacklists(categories, args.list)

    checker = blacklist_checker.BlacklistChecker(timeout=args.timeout, concurrent=args.concurrent)
    results, summaries = asyncio.run(checker.check(targets, zones, no_resolve=args.no_resolve))

    if args.output == "text":
        shown = results if args.verbose else [r for r in results if r.listed]
        content = report_writer.render(
            shown, "text", ["target", "ip", "zone", "description", "listed", "response"],
            title=f"Blacklist results ({sum(1 for r in results if r.listed)} listing(s))",
        )
    else:
        content = report_writer.render(results, args.output, ["target", "ip", "zone", "description", "listed", "response"])
    if not args.quiet or args.write:
        report_writer.write_output(content, args.write)
    if args.report:
        print(blacklist_checker.format_report(summaries))
    return 1 if any(s.listed for s in summaries) else 0


# ============================================================================
# firewall-report
# ============================================================================

def cmd_firewall_report(args: argparse.Namespace) -> int:
    require_root("Reading firewall rules")

    async def collect():
        reporter = firewall_report.FirewallReporter()
        rules = await reporter.collect(args.type, show_defaults=args.show_defaults, all_rules=args.all_rules)
        rules = firewall_report.filter_rules(rules, args.interface, args.port)
        if args.resolve_ips:
            await firewall_report.resolve_addresses(rules)
        return rules

    rules = asyncio.run(collect())
    if not args.quiet:
        logger.info(f"Collected {len(rules)} rule(s)")

    if args.summary:
        content = firewall_report.summarize(rules)
    else:
        content = report_writer.render(
            rules,
            args.format,
            firewall_report.COLUMNS,
            title="Firewall Rules Report",
            xml_root="firewall_report",
            xml_item="rule",
        )

    if args.diff:
        print_header("Changes since previous report")
        print(firewall_report.diff_reports(args.diff, content))
    report_writer.write_output(content, args.output)
    return 0


def register(subparsers: argparse._SubParsersAction) -> None:
    scan = subparsers.add_parser("port-scan", help="Scan TCP/UDP ports on hosts and ranges")
    scan.add_argument("targets", nargs="*", help="hosts, IPs, ranges (a.b.c.1-20) or CIDR blocks")
    scan.add_argument("-i", "--input", metavar="FILE", help="read targets from FILE")
    scan.add_argument("-p", "--ports", help="ports, e.g. 22,80,1000-2000 (default: common ports)")
    scan.add_argument("-t", "--timeout", type=float, default=1.0, help="connect timeout in seconds (default: 1)")
    scan.add_argument("-T", "--threads", type=positive_int, default=10, help="concurrent port checks (default: 10)")
    scan.add_argument("-s", "--scan-type", choices=port_scanner.SCAN_TYPES, default="tcp")
    scan.add_argument("-b", "--banner", action="store_true", help="grab service banners")
    scan.add_argument("-w", "--wait", type=int, default=0, metavar="MS", help="delay after each port check")
    scan.add_argument("-r", "--resolvers", metavar="FILE", help="DNS resolvers to use, one per line")
    scan.add_argument("-n", "--no-resolve", action="store_true", help="skip DNS resolution")
    scan.add_argument("-o", "--output", metavar="FILE")
    fmt = scan.add_mutually_exclusive_group()
    fmt.add_argument("-j", "--json", action="store_true")
    fmt.add_argument("-c", "--csv", action="store_true")
    fmt.add_argument("-x", "--xml", action="store_true")
    fmt.add_argument("-z", "--zenmap", action="store_true")
    scan.add_argument("-v", "--verbose", action="store_true")
    scan.add_argument("-q", "--quiet", action="store_true")
    scan.set_defaults(handler=cmd_port_scan)

    bw = subparsers.add_parser("bandwidth", help="Monitor network interface throughput")
    bw.add_argument("-i", "--interface", help="interface to monitor (default: all but lo)")
    bw.add_argument("-t", "--time", type=float, default=1.0, metavar="SECONDS", help="sampling interval (default: 1)")
    bw.add_argument("-a", "--alert", type=float, metavar="MBPS", help="alert above this rate")
    bw.add_argument("-s", "--stat", choices=bandwidth_monitor.STATS, default="both")
    bw.add_argument("-d", "--duration", type=float, metavar="SECONDS", help="stop after SECONDS")
    bw.add_argument("-l", "--log", metavar="FILE", help="append samples to a CSV file")
    bw.add_argument("-e", "--email", help="e-mail alerts to this address")
    bw.add_argument("--slack", metavar="WEBHOOK", help="send alerts to a Slack webhook")
    bw.add_argument("-u", "--unit", choices=("auto", "bytes", "KB", "MB", "GB"), default="auto")
    bw.add_argument("-b", "--bar", action="store_true", help="show a usage bar")
    bw.add_argument("-r", "--report", action="store_true", help="print a summary report at the end")
    bw.add_argument("-p", "--peak", action="store_true", help="include peak rates in the report")
    bw.add_argument("-q", "--quiet", action="store_true")
    bw.set_defaults(handler=cmd_bandwidth)

    dns = subparsers.add_parser("dns-latency", help="Measure DNS query latency")
    dns.add_argument("domains", nargs="+")
    dns.add_argument("-n", "--nameservers", help="comma-separated nameservers")
    dns.add_argument("-p", "--public-resolvers", action="store_true", help="test well-known public resolvers")
    dns.add_argument("-c", "--count", type=positive_int, default=3, help="queries per nameserver (default: 3)")
    dns.add_argument("-t", "--timeout", type=positive_int, default=2, help="query timeout in seconds (default: 2)")
    dns.add_argument("-w", "--wait", type=int, default=100, metavar="MS", help="delay between queries (default: 100)")
    dns.add_argument("-r", "--record", type=str.upper, choices=dns_latency.RECORD_TYPES, default="A")
    dns.add_argument("-s", "--sort", choices=list(dns_latency.SORT_FIELDS), default="avg")
    dns.add_argument("-f", "--format", choices=("table", "csv", "json"), default="table")
    dns.add_argument("-o", "--output", metavar="FILE")
    dns.add_argument("-q", "--quiet", action="store_true")
    dns.add_argument("-v", "--verbose", action="store_true")
    dns.set_defaults(handler=cmd_dns_latency)

    bl = subparsers.add_parser("blacklist", help="Check IPs and domains against DNS blacklists")
    bl.add_argument("targets", nargs="*")
    bl.add_argument("-i", "--ip", action="append")
    bl.add_argument("-d", "--domain", action="append")
    bl.add_argument("-f", "--file", metavar="FILE", help="targets, one per line")
    bl.add_argument("-l", "--list", metavar="FILE", help="custom blacklists as zone:description lines")
    bl.add_argument("-m", "--mail", action="store_true", help="mail server blacklists")
    bl.add_argument("-s", "--spam", action="store_true", help="spam blacklists")
    bl.add_argument("-p", "--proxy", action="store_true", help="proxy and TOR blacklists")
    bl.add_argument("-a", "--all", action="store_true", help="all blacklists (default)")
    bl.add_argument("-o", "--output", choices=("text", "csv", "json"), default="text")
    bl.add_argument("-w", "--write", metavar="FILE", help="write results to FILE")
    bl.add_argument("-t", "--timeout", type=positive_int, default=2)
    bl.add_argument("-c", "--concurrent", type=positive_int, default=5)
    bl.add_argument("-r", "--report", action="store_true", help="print a summary report")
    bl.add_argument("-n", "--no-resolve", action="store_true")
    bl.add_argument("-v", "--verbose", action="store_true", help="show clean results too")
    bl.add_argument("-q", "--quiet", action="store_true")
    bl.set_defaults(handler=cmd_blacklist)

    fw = subparsers.add_parser("firewall-report", help="Report firewall rules across backends")
    fw.add_argument("-t", "--type", choices=("auto", "all") + firewall_report.FIREWALL_TYPES, default="auto")
    fw.add_argument("-f", "--format", choices=("plain", "csv", "json", "html", "xml"), default="plain")
    fw.add_argument("-o", "--output", metavar="FILE")
    fw.add_argument("-i", "--interface")
    fw.add_argument("-p", "--port")
    fw.add_argument("-s", "--show-defaults", action="store_true", help="include built-in chains")
    fw.add_argument("-r", "--resolve-ips", action="store_true")
    fw.add_argument("-a", "--all-rules", action="store_true", help="include inactive firewalls")
    fw.add_argument("-S", "--summary", action="store_true")
    fw.add_argument("-d", "--diff", metavar="FILE", help="compare with a previous report")
    fw.add_argument("-v", "--verbose", action="store_true")
    fw.add_argument("-q", "--quiet", action="store_true")
    fw.set_defaults(handler=cmd_firewall_report)
