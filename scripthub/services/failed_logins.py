"""
Failed Login Alert - count failed authentications per source IP, alert on
offenders and optionally block them at the firewall.
"""

import asyncio
import ipaddress
import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

from scripthub.config import state_path
from scripthub.errors import ValidationError
from scripthub.schemas.models import FailedLoginReport, LoginOffender
from scripthub.services.command_runner import CommandRunner, command_exists, get_command_runner, require_root
from scripthub.services.helpers.targets import load_lines
from scripthub.services.notifier import Notifier

logger = logging.getLogger("scripthub.logins")

AUTH_LOG_CANDIDATES = ("/var/log/auth.log", "/var/log/secure", "/var/log/messages", "/var/log/syslog")
DEFAULT_FILTER = "Failed|Failure|Invalid"
BLOCKED_IPS_FILE = "blocked_ips.txt"

_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_SYSLOG_TS_RE = re.compile(r"^([A-Z][a-z]{2})\s+(\d{1,2}) (\d{2}:\d{2}:\d{2})")
_ISO_TS_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(\.\d+)?([+-]\d{2}:?\d{2}|Z)?")


def detect_auth_log(candidates: Sequence[str] = AUTH_LOG_CANDIDATES) -> str:
    for candidate in candidates:
        if Path(candidate).is_file():
            return candidate
    raise ValidationError(f"No auth log found (tried {', '.join(candidates)}); use --log-file")


def parse_timestamp(line: str, now: datetime) -> Optional[datetime]:
    """Leading syslog or ISO-8601 timestamp as naive local time, or None."""
    match = _ISO_TS_RE.match(line)
    if match:
        offset = match.group(3) or ""
        if offset == "Z":
            offset = "+00:00"
        elif len(offset) == 5:
            offset = f"{offset[:3]}:{offset[3:]}"
        stamp = datetime.fromisoformat(match.group(1).replace(" ", "T") + offset)
        if stamp.tzinfo is not None:
            stamp = stamp.astimezone().replace(tzinfo=None)
        return stamp

    match = _SYSLOG_TS_RE.match(line)
    if match:
        month, day, clock = match.groups()
        try:
            stamp = datetime.strptime(f"{now.year} {month} {day} {clock}", "%Y %b %d %H:%M:%S")
        except ValueError:
            return None
        # syslog has no year; a December line read in January belongs to last year
        if stamp > now + timedelta(days=1):
            stamp = stamp.replace(year=now.year - 1)
        return stamp
    return None


def valid_ipv4(candidate: str) -> bool:
    try:
        ipaddress.IPv4Address(candidate)
        return True
    except ValueError:
        return False


def count_failures(
    lines: Iterable[str],
    pattern: str = DEFAULT_FILTER,
    period_minutes: int = 0,
    now: Optional[datetime] = None,
) -> Counter:
    """
    Failed attempts per IPv4 address.

    With a period, lines older than now - period are ignored; lines without
    a parseable timestamp are kept.
    """
    try:
        matcher = re.compile(pattern)
    except re.error as e:
        raise ValidationError(f"Invalid filter pattern '{pattern}': {e}") from e

    now = now or datetime.now()
    cutoff = now - timedelta(minutes=period_minutes) if period_minutes > 0 else None

    counts: Counter = Counter()
    for line in lines:
        if not matcher.search(line):
            continue
        if cutoff is not None:
            stamp = parse_timestamp(line, now)
            if stamp is not None and stamp < cutoff:
                continue
        for candidate in _IPV4_RE.findall(line):
            if valid_ipv4(candidate):
                counts[candidate] += 1
    return counts


def load_whitelist(path: Optional[str]) -> Set[str]:
    if not path:
        return set()
    return {line.split()[0] for line in load_lines(path)}


def load_blocked(path: Path) -> Set[str]:
    if not path.is_file():
        return set()
    return {line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()}


def alert_message(report: FailedLoginReport, threshold: int, hostname: str) -> str:
    lines = [
        f"Failed login alert on {hostname}",
        f"Log file: {report.log_file}",
        f"Time: {report.checked_at:%Y-%m-%d %H:%M:%S}",
        f"Threshold: {threshold} failed attempts",
        "",
    ]
    for offender in report.alerts:
        lines.append(f"{offender.count} failed attempts from IP: {offender.ip}")
    if report.blocked:
        lines.append("")
        lines.append(f"Blocked IPs: {', '.join(report.blocked)}")
    return "\n".join(lines)


class FailedLoginMonitor:
    def __init__(
        self,
        log_file: Optional[str] = None,
        threshold: int = 5,
        period_minutes: int = 10,
        pattern: str = DEFAULT_FILTER,
        whitelist: Optional[Set[str]] = None,
        block: bool = False,
        block_threshold: int = 10,
        notifier: Optional[Notifier] = None,
        runner: Optional[CommandRunner] = None,
        blocked_file: Optional[Path] = None,
    ):
        if threshold < 1 or block_threshold < 1:
            raise ValidationError("Thresholds must be at least 1")
        self.log_file = log_file or detect_auth_log()
        if not Path(self.log_file).is_file():
            raise ValidationError(f"Log file not found: {self.log_file}")
        self.threshold = threshold
        self.period_minutes = period_minutes
        self.pattern = pattern
        self.whitelist = whitelist or set()
        self.block = block
        self.block_threshold = block_threshold
        self.notifier = notifier
        self.runner = runner or get_command_runner()
        self.blocked_file = blocked_file
        if block:
            require_root("Blocking IP addresses")

    def _blocked_path(self) -> Path:
        if self.blocked_file is None:
            self.blocked_file = state_path(BLOCKED_IPS_FILE)
        return self.blocked_file

    async def block_ip(self, ip: str) -> bool:
        if command_exists("firewall-cmd"):
            rule = f"rule family='ipv4' source address='{ip}' reject"
            result = await self.runner.run(["firewall-cmd", "--permanent", f"--add-rich-rule={rule}"], timeout=60)
            if result.success:
                result = await self.runner.run(["firewall-cmd", "--reload"], timeout=60)
        else:
            result = await self.runner.run(["iptables", "-A", "INPUT", "-s", ip, "-j", "DROP"], timeout=60)

        if not result.success:
            logger.error(f"Failed to block {ip}: {result.stderr}")
            return False
        logger.warning(f"Blocked IP {ip}")
        return True

    async def scan(self, now: Optional[datetime] = None) -> FailedLoginReport:
        with open(self.log_file, "r", encoding="utf-8", errors="replace") as handle:
            counts = count_failures(handle, self.pattern, self.period_minutes, now)

        report = FailedLoginReport(log_file=self.log_file, checked_at=now or datetime.now())
        for ip, count in counts.most_common():
            if ip in self.whitelist:
                logger.debug(f"Ignoring whitelisted IP {ip} ({count} attempts)")
                continue
            offender = LoginOffender(ip=ip, count=count)
            report.offenders.append(offender)
            if count >= self.threshold:
                report.alerts.append(offender)
                logger.warning(f"{count} failed attempts from IP: {ip}")

        if self.block:
            blocked_path = self._blocked_path()
            already = load_blocked(blocked_path)
            for offender in report.alerts:
                if offender.count < self.block_threshold:
                    continue
                if offender.ip in already:
                    offender.blocked = True
                    logger.debug(f"{offender.ip} is already blocked")
                    continue
                if await self.block_ip(offender.ip):
                    offender.blocked = True
                    report.blocked.append(offender.ip)
                    already.add(offender.ip)
                    with blocked_path.open("a", encoding="utf-8") as handle:
                        handle.write(offender.ip + "\n")

        if not report.alerts:
            logger.info(f"No IP exceeded {self.threshold} failed attempts in {self.log_file}")
        return report

    async def run_once(self, hostname: str, report_file: Optional[str] = None) -> FailedLoginReport:
        report = await self.scan()
        if report.alerts:
            message = alert_message(report, self.threshold, hostname)
            if self.notifier:
                await self.notifier.send(f"Failed login alert on {hostname}", message)
            if report_file:
                with open(report_file, "a", encoding="utf-8") as handle:
                    handle.write(message + "\n\n")
        return report

    async def run_daemon(self, hostname: str, interval: float, report_file: Optional[str] = None, iterations: Optional[int] = None) -> None:
        logger.info(f"Monitoring {self.log_file} every {interval:g}s")
        done = 0
        while iterations is None or done < iterations:
            await self.run_once(hostname, report_file)
            done += 1
            if iterations is None or done < iterations:
                await asyncio.sleep(interval)


def offenders_table(offenders: List[LoginOffender]) -> str:
    lines = [f"{'IP Address':<18} {'Attempts':>8}  Blocked"]
    for offender in offenders:
        lines.append(f"{offender.ip:<18} {offender.count:>8}  {'yes' if offender.blocked else 'no'}")
    return "\n".join(lines)
