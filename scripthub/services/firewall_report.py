"""
Firewall Rules Report - normalize iptables, nftables, ufw and firewalld rules.

Every backend is parsed into FirewallRule records so that one renderer,
one set of filters and one summary work across all of them.
"""

import asyncio
import difflib
import json
import logging
import re
import shlex
import socket
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from scripthub.errors import ValidationError
from scripthub.schemas.models import FirewallRule
from scripthub.services.command_runner import CommandRunner, command_exists, get_command_runner

logger = logging.getLogger("scripthub.firewall")

FIREWALL_TYPES = ("iptables", "nftables", "ufw", "firewalld")
IPTABLES_TABLES = ("filter", "nat", "mangle", "raw")
BUILTIN_CHAINS = {"INPUT", "FORWARD", "OUTPUT", "PREROUTING", "POSTROUTING"}

DETECTION_COMMANDS: Dict[str, List[str]] = {
    "iptables": ["iptables", "-L", "-n"],
    "nftables": ["nft", "list", "tables"],
    "ufw": ["ufw", "status"],
    "firewalld": ["firewall-cmd", "--state"],
}

COLUMNS = ["firewall", "table", "chain", "number", "protocol", "source", "destination", "interface", "port", "target", "options"]

_CHAIN_RE = re.compile(r"^Chain (\S+)(?: \(policy (\S+))?")
_PORT_RE = re.compile(r"(?:dpt|spt):(\d+(?::\d+)?)|(?:dports|sports|multiport dports|multiport sports)\s+([\d,:]+)")
_UFW_RULE_RE = re.compile(r"^\[\s*(\d+)\]\s+(.+?)\s{2,}(ALLOW|DENY|REJECT|LIMIT)(?:\s+(IN|OUT|FWD))?\s+(.+)$")


# ============================================================================
# Parsers
# ============================================================================

def extract_port(options: str) -> str:
    match = _PORT_RE.search(options)
    if not match:
        return ""
    return match.group(1) or match.group(2)


def parse_iptables(output: str, table: str, show_defaults: bool = False) -> List[FirewallRule]:
    """Parse `iptables -t TABLE -L -n -v --line-numbers`."""
    rules = []
    chain: Optional[str] = None
    for line in output.splitlines():
        match = _CHAIN_RE.match(line)
        if match:
            chain = match.group(1)
            if chain in BUILTIN_CHAINS and not show_defaults:
                logger.debug(f"Skipping built-in chain {table}/{chain}")
                chain = None
            continue
        if chain is None or not line.strip() or line.lstrip().startswith("num"):
            continue

        fields = line.split(None, 10)
        if len(fields) < 10 or not fields[0].isdigit():
            continue
        num, _pkts, _bytes, target, prot, _opt, iface_in, iface_out, source, destination = fields[:10]
        options = fields[10] if len(fields) > 10 else ""

        interfaces = [i for i in (iface_in, iface_out) if i != "*"]
        rules.append(FirewallRule(
            firewall="iptables",
            table=table,
            chain=chain,
            number=num,
            protocol=prot,
            source=source,
            destination=destination,
            interface=",".join(interfaces),
            port=extract_port(options),
            target=target,
            options=options.strip(),
        ))
    return rules


def _nft_value(value: Any) -> str:
    if isinstance(value, dict):
        if "prefix" in value:
            return f"{value['prefix']['addr']}/{value['prefix']['len']}"
        if "set" in value:
            return ",".join(_nft_value(v) for v in value["set"])
        if "range" in value:
            low, high = value["range"]
            return f"{low}-{high}"
        return json.dumps(value, sort_keys=True)
    if isinstance(value, list):
        return ",".join(_nft_value(v) for v in value)
    return str(value)


NFT_VERDICTS = ("accept", "drop", "reject", "return", "jump", "goto", "queue", "masquerade", "snat", "dnat", "redirect")


def parse_nft_ruleset(output: str) -> List[FirewallRule]:
    """Parse `nft -j list ruleset`."""
    try:
        data = json.loads(output or "{}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"Could not parse nft JSON output: {e}") from e

    rules = []
    for entry in data.get("nftables", []):
        rule = entry.get("rule")
        if not rule:
            continue
        record = FirewallRule(
            firewall="nftables",
            table=f"{rule.get('family', '')} {rule.get('table', '')}".strip(),
            chain=rule.get("chain", ""),
            number=str(rule.get("handle", "")),
        )
        interfaces = []
        extras = []
        for expr in rule.get("expr", []):
            if "match" in expr:
                left = expr["match"].get("left", {})
                right = _nft_value(expr["match"].get("right"))
                if "payload" in left:
                    payload = left["payload"]
                    field = payload.get("field", "")
                    if field in ("dport", "sport"):
                        record.protocol = payload.get("protocol", "")
                        record.port = right
                    elif field == "saddr":
                        record.source = right
                    elif field == "daddr":
                        record.destination = right
                    else:
                        extras.append(f"{payload.get('protocol', '')} {field} {right}".strip())
                elif "meta" in left:
                    key = left["meta"].get("key", "")
                    if key in ("iif", "oif", "iifname", "oifname"):
                        interfaces.append(right)
                    elif key == "l4proto":
                        record.protocol = right
                    else:
                        extras.append(f"{key} {right}")
                elif "ct" in left:
                    extras.append(f"ct {left['ct'].get('key', '')} {right}")
                continue
            for verdict in NFT_VERDICTS:
                if verdict in expr:
                    detail = expr[verdict]
                    if isinstance(detail, dict) and "target" in detail:
                        record.target = f"{verdict} {detail['target']}"
                    else:
                        record.target = verdict
                    break
        record.interface = ",".join(interfaces)
        record.options = "; ".join(extras)
        rules.append(record)
    return rules


def parse_ufw(output: str, include_inactive: bool = False) -> List[FirewallRule]:
    """Parse `ufw status numbered`."""
    if "Status: inactive" in output and not include_inactive:
        logger.info("UFW is inactive")
        return []

    rules = []
    for line in output.splitlines():
        match = _UFW_RULE_RE.match(line.strip())
        if not match:
            continue
        number, to, action, direction, source = match.groups()
        interface = ""
        if " on " in to:
            to, _, interface = to.partition(" on ")
        port, _, proto = to.strip().partition("/")
        if " " in proto:
            proto = proto.split()[0]
        rules.append(FirewallRule(
            firewall="ufw",
            table="ufw",
            chain=direction or "IN",
            number=number,
            protocol=proto or "any",
            source=source.strip(),
            destination=to.strip(),
            interface=interface.strip(),
            port=port if port[:1].isdigit() else "",
            target=action,
        ))
    return rules


def parse_firewalld_zone(zone: str, output: str) -> List[FirewallRule]:
    """Parse `firewall-cmd --zone=Z --list-all` into service, port and rich rules."""
    settings: Dict[str, str] = {}
    rich_rules: List[str] = []
    in_rich = False
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if in_rich and raw.startswith(("\t", "        ")) and line.startswith("rule"):
            rich_rules.append(line)
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        in_rich = key == "rich rules"
        settings[key] = value.strip()
        if in_rich and value.strip().startswith("rule"):
            rich_rules.append(value.strip())

    interfaces = settings.get("interfaces", "").replace(" ", ",")
    source = settings.get("sources", "").replace(" ", ",") or "any"

    rules = []
    number = 0
    for service in settings.get("services", "").split():
        number += 1
        rules.append(FirewallRule(
            firewall="firewalld", table=zone, chain="services", number=str(number),
            source=source, interface=interfaces, target="accept", options=f"service {service}",
        ))
    for spec in settings.get("ports", "").split():
        number += 1
        port, _, proto = spec.partition("/")
        rules.append(FirewallRule(
            firewall="firewalld", table=zone, chain="ports", number=str(number),
            protocol=proto, source=source, interface=interfaces, port=port, target="accept",
        ))
    for rich in rich_rules:
        number += 1
        record = FirewallRule(firewall="firewalld", table=zone, chain="rich", number=str(number), interface=interfaces, options=rich)
        try:
            tokens = shlex.split(rich)
        except ValueError:
            tokens = rich.split()
        for token in tokens:
            name, _, value = token.partition("=")
            if name == "address" and not record.source:
                record.source = value
            elif name == "port":
                record.port = value
            elif name == "protocol":
                record.protocol = value
            elif name == "service":
                record.options = f"service {value}"
        for verdict in ("accept", "reject", "drop", "mark"):
            if verdict in tokens:
                record.target = verdict
        rules.append(record)
    return rules


# ============================================================================
# Collection
# ============================================================================

def filter_rules(rules: List[FirewallRule], interface: Optional[str] = None, port: Optional[str] = None) -> List[FirewallRule]:
    selected = []
    for rule in rules:
        if interface and interface not in rule.interface.split(","):
            continue
        if port and port not in rule.port.split(",") and not re.search(rf"(?:dpt|spt):{re.escape(port)}\b", rule.options):
            continue
        selected.append(rule)
    return selected


class FirewallReporter:
    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or get_command_runner()

    async def detect(self) -> List[str]:
        """Firewalls whose detection command succeeds, in preference order."""
        active = []
        for name, argv in DETECTION_COMMANDS.items():
            if not command_exists(argv[0]):
                continue
            result = await self.runner.run(argv, timeout=15)
            if result.success and not (name == "ufw" and "inactive" in result.stdout):
                active.append(name)
        logger.debug(f"Detected firewalls: {active or 'none'}")
        return active

    async def collect_iptables(self, show_defaults: bool = False) -> List[FirewallRule]:
        tables = list(IPTABLES_TABLES)
        if (await self.runner.run(["iptables", "-t", "security", "-L", "-n"], timeout=15)).success:
            tables.append("security")
        rules = []
        for table in tables:
            result = await self.runner.run(["iptables", "-t", table, "-L", "-n", "-v", "--line-numbers"], timeout=30)
            if not result.success:
                logger.warning(f"Could not list iptables table {table}: {result.stderr}")
                continue
            rules.extend(parse_iptables(result.stdout, table, show_defaults))
        return rules

    async def collect_nftables(self) -> List[FirewallRule]:
        result = await self.runner.run(["nft", "-j", "list", "ruleset"], timeout=30)
        if not result.success:
            logger.warning(f"Could not list nftables ruleset: {result.stderr}")
            return []
        return parse_nft_ruleset(result.stdout)

    async def collect_ufw(self, include_inactive: bool = False) -> List[FirewallRule]:
        result = await self.runner.run(["ufw", "status", "numbered"], timeout=30)
        if not result.success:
            logger.warning(f"Could not read ufw status: {result.stderr}")
            return []
        return parse_ufw(result.stdout, include_inactive)

    async def collect_firewalld(self) -> List[FirewallRule]:
        zones_result = await self.runner.run(["firewall-cmd", "--get-zones"], timeout=30)
        if not zones_result.success:
            logger.warning(f"Could not list firewalld zones: {zones_result.stderr}")
            return []
        rules = []
        for zone in zones_result.stdout.split():
            result = await self.runner.run(["firewall-cmd", f"--zone={zone}", "--list-all"], timeout=30)
            if result.success:
                rules.extend(parse_firewalld_zone(zone, result.stdout))
        return rules

    async def collect(
        self,
        firewall_type: str = "auto",
        show_defaults: bool = False,
        all_rules: bool = False,
    ) -> List[FirewallRule]:
        """
        Gather rules from the selected firewall(s).

        Raises:
            ValidationError: unknown type, or the named firewall is not active
        """
        if firewall_type not in ("auto", "all") + FIREWALL_TYPES:
            raise ValidationError(f"Invalid firewall type '{firewall_type}'")

        active = await self.detect()
        if firewall_type == "auto":
            if not active:
                raise ValidationError("No active firewall detected")
            selected = active[:1]
        elif firewall_type == "all":
            selected = active
        else:
            if firewall_type not in active and not all_rules:
                raise ValidationError(f"{firewall_type} is not active on this system")
            selected = [firewall_type]

        logger.info(f"Collecting rules from: {', '.join(selected) or 'none'}")
        rules: List[FirewallRule] = []
        for name in selected:
            if name == "iptables":
                rules.extend(await self.collect_iptables(show_defaults))
            elif name == "nftables":
                rules.extend(await self.collect_nftables())
            elif name == "ufw":
                rules.extend(await self.collect_ufw(include_inactive=all_rules))
            elif name == "firewalld":
                rules.extend(await self.collect_firewalld())
        return rules


async def resolve_addresses(rules: List[FirewallRule]) -> None:
    """Replace source/destination IPs with hostnames where reverse lookup succeeds."""
    cache: Dict[str, str] = {}
    loop = asyncio.get_running_loop()

    async def resolve(address: str) -> str:
        if not address or "/" in address and not address.endswith("/32"):
            return address
        ip = address[:-3] if address.endswith("/32") else address
        if ip in ("0.0.0.0", "::", "any", "Anywhere"):
            return address
        if ip not in cache:
            try:
                host, _, _ = await loop.run_in_executor(None, socket.gethostbyaddr, ip)
                cache[ip] = host
            except (socket.herror, socket.gaierror, OSError):
                cache[ip] = address
        return cache[ip]

    for rule in rules:
        rule.source = await resolve(rule.source)
        rule.destination = await resolve(rule.destination)


def summarize(rules: List[FirewallRule]) -> str:
    per_chain = Counter((r.firewall, r.table, r.chain) for r in rules)
    per_target = Counter(r.target or "-" for r in rules)
    lines = ["Firewall Rules Summary", "=" * 40, f"Total rules: {len(rules)}", "", "Rules per chain:"]
    for (firewall, table, chain), count in sorted(per_chain.items()):
        lines.append(f"  {firewall:<10} {table:<12} {chain:<20} {count}")
    lines.append("")
    lines.append("Rules per target:")
    for target, count in per_target.most_common():
        lines.append(f"  {target:<20} {count}")
    return "\n".join(lines)


def diff_reports(previous_file: str, current: str) -> str:
    path = Path(previous_file)
    if not path.is_file():
        raise ValidationError(f"Previous report not found: {previous_file}")
    previous = path.read_text(encoding="utf-8").splitlines()
    diff = list(difflib.unified_diff(previous, current.splitlines(), fromfile=previous_file, tofile="current", lineterm=""))
    if not diff:
        return "No differences found between the current rules and the previous report"
    return "\n".join(diff)
