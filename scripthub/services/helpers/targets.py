"""
Target helpers - host lists, IP ranges, port specs and service names.
"""

import ipaddress
import re
from pathlib import Path
from typing import Dict, Iterable, List

from scripthub.errors import ValidationError

MAX_EXPANDED_HOSTS = 65536

COMMON_PORTS = [
    21, 22, 23, 25, 53, 80, 110, 111, 135, 139,
    143, 443, 445, 993, 995, 1723, 3306, 3389, 5900, 8080,
]

SERVICE_NAMES: Dict[int, str] = {
    20: "ftp", 21: "ftp", 22: "ssh", 23: "telnet", 25: "smtp",
    53: "domain", 80: "http", 110: "pop3", 111: "rpcbind", 135: "msrpc",
    139: "netbios-ssn", 143: "imap", 443: "https", 445: "microsoft-ds",
    993: "imaps", 995: "pop3s", 1723: "pptp", 3306: "mysql",
    3389: "ms-wbt-server", 5432: "postgresql", 5900: "vnc", 8080: "http-proxy",
}

_FULL_RANGE_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3})-(\d{1,3}(?:\.\d{1,3}){3})$")
_LAST_OCTET_RANGE_RE = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3})\.(\d{1,3})-(\d{1,3})$")


def load_lines(path: str) -> List[str]:
    """Non-blank lines of a file, skipping '#' comments."""
    file_path = Path(path)
    if not file_path.is_file():
        raise ValidationError(f"File not found: {path}")
    lines = []
    for raw in file_path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def reverse_ipv4(ip: str) -> str:
    """1.2.3.4 -> 4.3.2.1"""
    if not is_ipv4(ip):
        raise ValidationError(f"Not an IPv4 address: {ip}")
    return ".".join(reversed(ip.split(".")))


def _expand_one(target: str) -> List[str]:
    match = _FULL_RANGE_RE.match(target)
    if match:
        try:
            start = ipaddress.IPv4Address(match.group(1))
            end = ipaddress.IPv4Address(match.group(2))
        except ValueError as e:
            raise ValidationError(f"Invalid IP range '{target}': {e}") from e
        if int(start) > int(end):
            raise ValidationError(f"Invalid IP range '{target}': start is after end")
        if int(end) - int(start) + 1 > MAX_EXPANDED_HOSTS:
            raise ValidationError(f"IP range '{target}' exceeds {MAX_EXPANDED_HOSTS} hosts")
        return [str(ipaddress.IPv4Address(n)) for n in range(int(start), int(end) + 1)]

    if "/" in target:
        try:
            network = ipaddress.ip_network(target, strict=False)
        except ValueError as e:
            raise ValidationError(f"Invalid CIDR '{target}': {e}") from e
        if network.num_addresses > MAX_EXPANDED_HOSTS + 2:
            raise ValidationError(f"CIDR '{target}' exceeds {MAX_EXPANDED_HOSTS} hosts")
        if network.num_addresses <= 2:
            return [str(addr) for addr in network]
        return [str(addr) for addr in network.hosts()]

    match = _LAST_OCTET_RANGE_RE.match(target)
    if match:
        prefix, first, last = match.group(1), int(match.group(2)), int(match.group(3))
        if not (1 <= first <= last <= 255):
            raise ValidationError(f"Invalid IP range '{target}': octets must satisfy 1 <= start <= end <= 255")
        return [f"{prefix}.{octet}" for octet in range(first, last + 1)]

    return [target]


def expand_targets(targets: Iterable[str]) -> List[str]:
    """
    Expand ranges and CIDR blocks into individual hosts.

    Supported forms: a.b.c.d-e.f.g.h, a.b.c.d/nn, a.b.c.N-M. Anything else
    (a hostname) passes through. Order is kept and duplicates dropped.
    """
    seen = set()
    expanded = []
    for target in targets:
        target = target.strip()
        if not target:
            continue
        for host in _expand_one(target):
            if host not in seen:
                seen.add(host)
                expanded.append(host)
    return expanded


def parse_ports(spec: str) -> List[int]:
    """
    Parse "22,80,1000-1010" into sorted unique ports.

    An empty spec returns COMMON_PORTS.
    """
    if not spec or not spec.strip():
        return list(COMMON_PORTS)

    ports = set()
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            low, _, high = part.partition("-")
            if not (low.strip().isdigit() and high.strip().isdigit()):
                raise ValidationError(f"Invalid port range: {part}")
            start, end = int(low), int(high)
            if start > end:
                raise ValidationError(f"Invalid port range: {part}")
            candidates = range(start, end + 1)
        else:
            if not part.isdigit():
                raise ValidationError(f"Invalid port: {part}")
            candidates = [int(part)]
        for port in candidates:
            if not 1 <= port <= 65535:
                raise ValidationError(f"Port out of range (1-65535): {port}")
            ports.add(port)

    if not ports:
        raise ValidationError(f"No ports in specification '{spec}'")
    return sorted(ports)


def service_name(port: int) -> str:
    return SERVICE_NAMES.get(port, "unknown")
