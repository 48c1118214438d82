"""
Password Policy Checker - audit account password aging against a policy.

Read-only: aging values come from `chage -l` and the lock state from
`passwd -S`. Accounts are never modified.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from scripthub.errors import ValidationError
from scripthub.schemas.models import PasswordAudit
from scripthub.services.command_runner import CommandRunner, get_command_runner, require_commands

logger = logging.getLogger("scripthub.password")

PASSWD_FILE = "/etc/passwd"
SYSTEM_UID_LIMIT = 1000
NOLOGIN_SHELLS = ("nologin", "false")

# Keys accepted in a shell-style policy file
POLICY_KEYS = {
    "MIN_PASS_DAYS": "min_days",
    "MAX_PASS_DAYS": "max_days",
    "PASS_WARN_DAYS": "warn_days",
    "PASS_INACTIVE_DAYS": "inactive_days",
}

_CHAGE_FIELDS = {
    "Last password change": "last_change",
    "Password inactive": "password_inactive",
    "Minimum number of days between password change": "min_days",
    "Maximum number of days between password change": "max_days",
    "Number of days of warning before password expires": "warn_days",
}
_INT_RE = re.compile(r"^-?\d+$")


@dataclass
class PasswordPolicy:
    min_days: int = 1
    max_days: int = 90
    warn_days: int = 7
    inactive_days: int = 30


@dataclass
class PasswdEntry:
    user: str
    uid: int
    gid: int
    shell: str

    @property
    def login_shell(self) -> bool:
        return not self.shell.endswith(NOLOGIN_SHELLS)


def load_policy_file(path: str, policy: PasswordPolicy) -> PasswordPolicy:
    """Override policy values from KEY=VALUE lines (MIN_PASS_DAYS=1 ...)."""
    policy_file = Path(path)
    if not policy_file.is_file():
        raise ValidationError(f"Policy file not found: {path}")

    values = asdict(policy)
    for number, line in enumerate(policy_file.read_text(encoding="utf-8").splitlines(), 1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if not sep or key not in POLICY_KEYS:
            logger.debug(f"{path}:{number}: ignoring '{line}'")
            continue
        value = value.strip().strip("'\"")
        if not value.isdigit():
            raise ValidationError(f"{path}:{number}: {key} must be a non-negative integer")
        values[POLICY_KEYS[key]] = int(value)

    loaded = PasswordPolicy(**values)
    logger.info(
        f"Loaded policy from {path}: min {loaded.min_days}, max {loaded.max_days}, "
        f"warn {loaded.warn_days}, inactive {loaded.inactive_days} days"
    )
    return loaded


def parse_passwd(text: str) -> List[PasswdEntry]:
    entries = []
    for line in text.splitlines():
        fields = line.split(":")
        if len(fields) < 7 or line.startswith("#"):
            continue
        try:
            entries.append(PasswdEntry(user=fields[0], uid=int(fields[2]), gid=int(fields[3]), shell=fields[6]))
        except ValueError:
            logger.debug(f"Skipping malformed passwd line: {line}")
    return entries


def parse_chage(output: str) -> Dict[str, object]:
    """
    Aging values from `LC_ALL=C chage -l USER`.

    "never" becomes -1; values that are not numbers fall back to the
    shadow defaults (min 0, max 99999, warn 7).
    """
    raw = {}
    for line in output.splitlines():
        label, sep, value = line.partition(":")
        key = _CHAGE_FIELDS.get(label.strip())
        if sep and key:
            raw[key] = value.strip()

    def number(key: str, default: int) -> int:
        value = raw.get(key, "")
        if value == "never":
            return -1
        return int(value) if _INT_RE.match(value) else default

    return {
        "last_change": raw.get("last_change", ""),
        "min_days": number("min_days", 0),
        "max_days": number("max_days", 99999),
        "warn_days": number("warn_days", 7),
    }


def parse_passwd_status(output: str) -> Dict[str, object]:
    """`passwd -S USER`: name, state, last change, min, max, warn, inactive."""
    fields = output.split()
    state = fields[1] if len(fields) > 1 else ""
    inactive = -1
    if len(fields) > 6 and _INT_RE.match(fields[6]):
        inactive = int(fields[6])
    return {"state": state, "inactive_days": inactive}


def evaluate(audit: PasswordAudit, policy: PasswordPolicy, state: str = "") -> PasswordAudit:
    """Fill compliant and issues; lock and no-password notes do not affect compliance."""
    issues = []
    if audit.min_days < policy.min_days:
        issues.append(f"Minimum password age ({audit.min_days} days) is less than required ({policy.min_days} days)")
    if audit.max_days == -1 or audit.max_days > policy.max_days:
        issues.append(f"Maximum password age ({audit.max_days} days) is greater than allowed ({policy.max_days} days)")
    if audit.warn_days < policy.warn_days:
        issues.append(f"Password warning period ({audit.warn_days} days) is less than recommended ({policy.warn_days} days)")
    if audit.inactive_days == -1 or audit.inactive_days > policy.inactive_days:
        issues.append(f"Password inactivity period ({audit.inactive_days} days) exceeds policy ({policy.inactive_days} days)")
    audit.compliant = not issues

    if state in ("L", "LK"):
        issues.append("Account is locked")
    elif state == "NP":
        issues.append("No password set")
    audit.issues = issues
    return audit


class PasswordPolicyChecker:
    def __init__(
        self,
        policy: Optional[PasswordPolicy] = None,
        runner: Optional[CommandRunner] = None,
        passwd_file: str = PASSWD_FILE,
    ):
        self.policy = policy or PasswordPolicy()
        self.runner = runner or get_command_runner()
        self.passwd_file = passwd_file

    def _passwd_entries(self) -> List[PasswdEntry]:
        try:
            return parse_passwd(Path(self.passwd_file).read_text(encoding="utf-8"))
        except OSError as e:
            raise ValidationError(f"Cannot read {self.passwd_file}: {e}") from e

    async def group_members(self, group: str, entries: Sequence[PasswdEntry]) -> Optional[List[str]]:
        """Supplementary members plus accounts whose primary group it is; None if unknown."""
        result = await self.runner.run(["getent", "group", group], timeout=10)
        if not result.success or not result.stdout:
            return None
        fields = result.stdout.splitlines()[0].split(":")
        members = [m for m in (fields[3].split(",") if len(fields) > 3 else []) if m]
        if len(fields) > 2 and fields[2].isdigit():
            gid = int(fields[2])
            members.extend(e.user for e in entries if e.gid == gid and e.user not in members)
        return members

    async def select_users(
        self,
        users: Sequence[str] = (),
        groups: Sequence[str] = (),
        all_users: bool = False,
        include_system: bool = False,
    ) -> List[str]:
        """
        Resolve the accounts to audit.

        Without users or groups every login account is checked; system
        accounts (UID < 1000) only with include_system.
        """
        entries = self._passwd_entries()
        known = {e.user for e in entries}
        selected: List[str] = []

        for user in users:
            if user not in known:
                logger.warning(f"User does not exist: {user}")
            elif user not in selected:
                selected.append(user)

        for group in groups:
            members = await self.group_members(group, entries)
            if members is None:
                logger.warning(f"Group does not exist: {group}")
                continue
            selected.extend(m for m in members if m not in selected)

        if all_users or not (users or groups):
            for entry in entries:
                if not include_system and entry.uid < SYSTEM_UID_LIMIT:
                    continue
                if not entry.login_shell or entry.user in selected:
                    continue
                selected.append(entry.user)
        return selected

    async def audit_user(self, user: str) -> PasswordAudit:
        chage = await self.runner.run(["chage", "-l", user], timeout=10, env={"LC_ALL": "C"})
        if not chage.success:
            logger.warning(f"Could not get password aging info for {user}: {chage.stderr or chage.exit_code}")
            return PasswordAudit(user=user, compliant=False, issues=["Could not read password aging information"])

        audit = PasswordAudit(user=user, **parse_chage(chage.stdout))
        status = await self.runner.run(["passwd", "-S", user], timeout=10, env={"LC_ALL": "C"})
        state = ""
        if status.success:
            parsed = parse_passwd_status(status.stdout)
            state = parsed["state"]
            audit.inactive_days = parsed["inactive_days"]
        return evaluate(audit, self.policy, state)

    async def check(self, users: Sequence[str]) -> List[PasswordAudit]:
        require_commands("chage")
        if not users:
            return []
        return [await self.audit_user(user) for user in users]


def format_audit(audit: PasswordAudit, policy: PasswordPolicy) -> str:
    lines = [
        f"User: {audit.user}",
        f"  Compliant: {'Yes' if audit.compliant else 'No'}",
        f"  Last password change: {audit.last_change}",
        f"  Minimum password age: {audit.min_days} days (Policy: {policy.min_days} days)",
        f"  Maximum password age: {audit.max_days} days (Policy: {policy.max_days} days)",
        f"  Password warning period: {audit.warn_days} days (Policy: {policy.warn_days} days)",
        f"  Password inactivity period: {audit.inactive_days} days (Policy: {policy.inactive_days} days)",
    ]
    if audit.issues:
        lines.append("  Issues:")
        lines.extend(f"    - {issue}" for issue in audit.issues)
    return "\n".join(lines)


def render_report(audits: List[PasswordAudit], policy: PasswordPolicy, fmt: str = "text", now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    if fmt == "json":
        return json.dumps(
            {
                "report_time": timestamp,
                "policy": asdict(policy),
                "users": [audit.model_dump() for audit in audits],
            },
            indent=2,
        )

    lines = [
        "Password Policy Compliance Report",
        f"Generated: {timestamp}",
        "",
        "Policy Settings:",
        f"  Minimum password age: {policy.min_days} days",
        f"  Maximum password age: {policy.max_days} days",
        f"  Password warning period: {policy.warn_days} days",
        f"  Account inactivity lock: {policy.inactive_days} days",
        "",
        "User Compliance:",
    ]
    for audit in audits:
        lines.append(format_audit(audit, policy))
    return "\n".join(lines)
