"""Utility commands: rotate-log, csv-to-json, public-ip."""

import argparse
import asyncio
import json
import logging
from datetime import datetime

from scripthub.commands import positive_int, split_csv
from scripthub.services import public_ip
from scripthub.services.csv_to_json import ConversionOptions, convert_file
from scripthub.services.helpers import report_writer
from scripthub.services.helpers.units import parse_size
from scripthub.services.log_rotation import rotate_log

logger = logging.getLogger("scripthub.cli")


# ============================================================================
# rotate-log
# ============================================================================

def cmd_rotate_log(args: argparse.Namespace) -> int:
    rotate_log(
        args.log_file,
        num_backups=args.num_backups,
        compress=args.compress,
        max_size=parse_size(args.size) if args.size else None,
        force=args.force,
        backup_dir=args.path,
    )
    return 0


# ============================================================================
# csv-to-json
# ============================================================================

def cmd_csv_to_json(args: argparse.Namespace) -> int:
    options = ConversionOptions(
        delimiter=args.delimiter,
        header=not args.no_header,
        fields=split_csv(args.fields),
        array=args.array,
        pretty=args.pretty,
        types=args.types,
        null_value=args.null,
        true_value=args.true,
        false_value=args.false,
        date_fields=split_csv(args.date_fields),
        ignore_errors=args.ignore_errors,
    )
    content = convert_file(args.input, options)
    report_writer.write_output(content, args.output)
    return 0


# ============================================================================
# public-ip
# ============================================================================

def cmd_public_ip(args: argparse.Namespace) -> int:
    version = "ipv6" if args.ipv6 else "both" if args.both else "ipv4"
    resolver = public_ip.PublicIPResolver(timeout=args.timeout)
    result = asyncio.run(resolver.lookup(args.method, version))

    info = {}
    if args.additional_info or (args.format and "{" in args.format):
        info = asyncio.run(resolver.additional_info(result.ip))
        public_ip.apply_info(result, info)

    if args.format:
        content = public_ip.render_template(args.format, result, info)
    elif args.json:
        content = json.dumps(public_ip.render_json(result, info if args.additional_info else {}), indent=2)
    elif args.csv:
        content = public_ip.render_csv(result, args.additional_info)
    else:
        lines = [f"IPv4: {result.ipv4}" if result.ipv4 and version == "both" else result.ipv4 or ""]
        if result.ipv6:
            lines.append(f"IPv6: {result.ipv6}" if version == "both" else result.ipv6)
        if args.additional_info:
            lines.extend([
                f"Hostname: {result.hostname or 'N/A'}",
                f"Location: {', '.join(v for v in (result.city, result.region, result.country) if v) or 'N/A'}",
                f"ISP:      {result.isp or 'N/A'}",
            ])
        content = "\n".join(line for line in lines if line)

    if args.log:
        with open(args.log, "a", encoding="utf-8") as handle:
            handle.write(f"{datetime.now():%Y-%m-%d %H:%M:%S} {result.ip} ({result.service})\n")
    if not args.silent:
        report_writer.write_output(content)
    return 0


def register(subparsers: argparse._SubParsersAction) -> None:
    rotate = subparsers.add_parser("rotate-log", help="Rotate a log file with numbered timestamped backups")
    rotate.add_argument("log_file")
    rotate.add_argument("-n", "--num-backups", type=positive_int, default=5)
    rotate.add_argument("-c", "--compress", action="store_true", help="gzip the rotated copy")
    rotate.add_argument("-s", "--size", help="rotate only when the file is at least SIZE (e.g. 10M)")
    rotate.add_argument("-f", "--force", action="store_true", help="rotate regardless of size")
    rotate.add_argument("-p", "--path", metavar="DIR", help="backup directory (default: the log's directory)")
    rotate.set_defaults(handler=cmd_rotate_log)

    csv2json = subparsers.add_parser("csv-to-json", help="Convert CSV to JSON")
    csv2json.add_argument("input", help="CSV file")
    csv2json.add_argument("-o", "--output", metavar="FILE")
    csv2json.add_argument("-d", "--delimiter", default=",")
    csv2json.add_argument("-a", "--array", action="store_true", help="output arrays instead of objects")
    csv2json.add_argument("-n", "--no-header", action="store_true", help="the first row is data")
    csv2json.add_argument("-f", "--fields", help="comma-separated column names (with --no-header)")
    csv2json.add_argument("-p", "--pretty", action="store_true")
    csv2json.add_argument("-t", "--types", action="store_true", help="detect numbers, booleans and nulls")
    csv2json.add_argument("-N", "--null", default="", help="value treated as null (default: empty)")
    csv2json.add_argument("-T", "--true", default="true")
    csv2json.add_argument("-F", "--false", default="false")
    csv2json.add_argument("-D", "--date-fields", help="comma-separated columns kept as date strings")
    csv2json.add_argument("-i", "--ignore-errors", action="store_true", help="drop extra fields instead of failing")
    csv2json.set_defaults(handler=cmd_csv_to_json)

    ip = subparsers.add_parser("public-ip", help="Show this host's public IP address")
    ip.add_argument("-m", "--method", default="all", choices=["all", *public_ip.available_services()])
    ip.add_argument("-t", "--timeout", type=positive_int, default=5)
    family = ip.add_mutually_exclusive_group()
    family.add_argument("-4", "--ipv4", action="store_true")
    family.add_argument("-6", "--ipv6", action="store_true")
    family.add_argument("-b", "--both", action="store_true")
    ip.add_argument("-j", "--json", action="store_true")
    ip.add_argument("-c", "--csv", action="store_true")
    ip.add_argument("-a", "--additional-info", action="store_true", help="add location and ISP from ipinfo.io")
    ip.add_argument("-f", "--format", metavar="TEMPLATE", help="e.g. '{ip} {country}'")
    ip.add_argument("-l", "--log", metavar="FILE", help="append the result to FILE")
    ip.add_argument("-s", "--silent", action="store_true")
    ip.set_defaults(handler=cmd_public_ip)
