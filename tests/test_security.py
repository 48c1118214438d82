"""Tests for file-integrity, failed-logins and password-policy services."""

import hashlib
import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from scripthub.errors import ValidationError
from scripthub.schemas.models import IntegrityReport, PasswordAudit
from scripthub.services import failed_logins, password_policy
from scripthub.services.failed_logins import (
    FailedLoginMonitor,
    alert_message,
    count_failures,
    detect_auth_log,
    load_whitelist,
    offenders_table,
    parse_timestamp,
)
from scripthub.services.file_integrity import (
    FileIntegrityChecker,
    change_line,
    database_algorithm,
    iter_files,
    read_database,
    summary_text,
)
from scripthub.services.password_policy import (
    PasswordPolicy,
    PasswordPolicyChecker,
    evaluate,
    load_policy_file,
    parse_chage,
    parse_passwd,
    parse_passwd_status,
)

from conftest import fail, ok


# ============================================================================
# file-integrity
# ============================================================================

@pytest.fixture
def watched(tmp_path):
    root = tmp_path / "etc"
    (root / "conf.d").mkdir(parents=True)
    (root / "hosts").write_text("127.0.0.1 localhost\n")
    (root / "passwd").write_text("root:x:0:0\n")
    (root / "cache.swp").write_text("swap")
    (root / "conf.d" / "app.conf").write_text("debug=false\n")
    return root


class TestIntegrityHelpers:
    def test_iter_files_flat(self, watched):
        assert sorted(p.name for p in iter_files([str(watched)])) == ["cache.swp", "hosts", "passwd"]

    def test_iter_files_recursive_with_excludes(self, watched):
        names = sorted(p.name for p in iter_files([str(watched)], recursive=True, excludes=["*.swp"]))
        assert names == ["app.conf", "hosts", "passwd"]

    def test_iter_files_single_file(self, watched):
        assert [p.name for p in iter_files([str(watched / "hosts")])] == ["hosts"]

    def test_database_round_trip(self, watched, tmp_path):
        db = tmp_path / "db" / "integrity.db"
        count = FileIntegrityChecker(str(db), [str(watched)], algorithm="md5").initialize()
        assert count == 3
        assert database_algorithm(db) == "md5"
        entries = read_database(db)
        hosts = str((watched / "hosts").resolve())
        assert entries[hosts] == hashlib.md5(b"127.0.0.1 localhost\n").hexdigest()

    def test_change_line(self, watched, tmp_path):
        db = tmp_path / "integrity.db"
        checker = FileIntegrityChecker(str(db), [str(watched)])
        checker.initialize()
        (watched / "hosts").write_text("changed\n")
        [change] = checker.check().changes
        line = change_line(change, datetime(2024, 1, 2, 3, 4, 5))
        assert line.startswith(f"2024-01-02 03:04:05 - MODIFIED: {change.path} (Old: ")


class TestFileIntegrityChecker:
    def test_detects_new_modified_missing(self, watched, tmp_path):
        db = tmp_path / "integrity.db"
        log = tmp_path / "changes.log"
        checker = FileIntegrityChecker(str(db), [str(watched)], recursive=True)
        checker.initialize()

        (watched / "hosts").write_text("10.0.0.1 evil\n")
        (watched / "passwd").unlink()
        (watched / "conf.d" / "new.conf").write_text("x")

        report = checker.check(str(log))
        kinds = {change.path.rsplit("/", 1)[-1]: change.kind for change in report.changes}
        assert kinds == {"hosts": "MODIFIED", "new.conf": "NEW", "passwd": "MISSING"}
        assert report.total == 5
        assert len(log.read_text().splitlines()) == 3

    def test_clean_check(self, watched, tmp_path):
        db = tmp_path / "integrity.db"
        checker = FileIntegrityChecker(str(db), [str(watched)])
        checker.initialize()
        report = checker.check(str(tmp_path / "changes.log"))
        assert report.changes == []
        assert not (tmp_path / "changes.log").exists()

    def test_uses_database_algorithm(self, watched, tmp_path):
        db = tmp_path / "integrity.db"
        FileIntegrityChecker(str(db), [str(watched)], algorithm="sha1").initialize()
        checker = FileIntegrityChecker(str(db), [str(watched)], algorithm="sha512")
        assert checker.check().changes == []
        assert checker.algorithm == "sha1"

    def test_backup_existing_database(self, watched, tmp_path):
        db = tmp_path / "integrity.db"
        checker = FileIntegrityChecker(str(db), [str(watched)])
        checker.initialize()
        checker.initialize(backup=True)
        assert len(list(tmp_path.glob("integrity.db.*.bak"))) == 1

    def test_check_without_database(self, watched, tmp_path):
        with pytest.raises(ValidationError, match="--init"):
            FileIntegrityChecker(str(tmp_path / "none.db"), [str(watched)]).check()

    @pytest.mark.parametrize("paths,algorithm", [([], "sha256"), (["/etc"], "crc32")])
    def test_validation(self, tmp_path, paths, algorithm):
        with pytest.raises(ValidationError):
            FileIntegrityChecker(str(tmp_path / "db"), paths, algorithm=algorithm)

    @pytest.mark.asyncio
    async def test_monitor_notifies_on_changes(self, watched, tmp_path, runner):
        db = tmp_path / "integrity.db"
        checker = FileIntegrityChecker(str(db), [str(watched)], runner=runner)
        checker.initialize()
        (watched / "hosts").write_text("tampered\n")

        reports = []
        await checker.monitor(0, notify_command="mail -s alert root", on_report=reports.append, iterations=2)

        assert len(reports) == 2
        argv = runner.run.call_args.args[0]
        assert argv == ["sh", "-c", "mail -s alert root"]
        assert "MODIFIED" in runner.run.call_args.kwargs["input"]

    def test_summary_text(self):
        report = IntegrityReport(checked_at=datetime(2024, 1, 1), algorithm="sha256", total=4)
        assert "Files checked: 4" in summary_text(report)
        assert "New: 0  Modified: 0  Missing: 0" in summary_text(report)


# ============================================================================
# failed-logins
# ============================================================================

NOW = datetime(2024, 3, 10, 12, 0, 0)

AUTH_LOG = """Mar 10 11:55:01 web1 sshd[100]: Failed password for root from 203.0.113.5 port 4242 ssh2
Mar 10 11:56:01 web1 sshd[101]: Failed password for root from 203.0.113.5 port 4243 ssh2
Mar 10 11:57:01 web1 sshd[102]: Failed password for admin from 203.0.113.5 port 4244 ssh2
Mar 10 11:58:01 web1 sshd[103]: Invalid user test from 198.51.100.7 port 5000
Mar 10 11:58:30 web1 sshd[104]: Failed password for ops from 10.0.0.2 port 6000 ssh2
Mar 10 10:00:00 web1 sshd[105]: Failed password for root from 192.0.2.99 port 7000 ssh2
Mar 10 11:59:00 web1 sshd[106]: Accepted publickey for ops from 10.0.0.3 port 6001 ssh2
Mar 10 11:59:30 web1 sshd[107]: Failed password for root from 999.1.1.1 port 1 ssh2
"""


class TestParseTimestamp:
    def test_syslog(self):
        assert parse_timestamp("Mar 10 11:55:01 web1 sshd", NOW) == datetime(2024, 3, 10, 11, 55, 1)

    def test_syslog_from_last_year(self):
        assert parse_timestamp("Dec 31 23:59:59 web1 sshd", datetime(2024, 1, 1, 0, 5)) == datetime(2023, 12, 31, 23, 59, 59)

    def test_iso_naive(self):
        assert parse_timestamp("2024-03-10T11:00:00.123 web1 sshd", NOW) == datetime(2024, 3, 10, 11, 0, 0)

    def test_unparseable(self):
        assert parse_timestamp("sshd: Failed password", NOW) is None


class TestCountFailures:
    def test_counts_matching_lines(self):
        counts = count_failures(AUTH_LOG.splitlines(), now=NOW)
        assert counts == {"203.0.113.5": 3, "198.51.100.7": 1, "10.0.0.2": 1, "192.0.2.99": 1}

    def test_period_drops_old_lines(self):
        counts = count_failures(AUTH_LOG.splitlines(), period_minutes=10, now=NOW)
        assert "192.0.2.99" not in counts
        assert counts["203.0.113.5"] == 3

    def test_lines_without_timestamp_kept(self):
        counts = count_failures(["sshd: Failed password from 203.0.113.9"], period_minutes=5, now=NOW)
        assert counts == {"203.0.113.9": 1}

    def test_custom_pattern(self):
        counts = count_failures(AUTH_LOG.splitlines(), pattern="Invalid user", now=NOW)
        assert counts == {"198.51.100.7": 1}

    def test_bad_pattern(self):
        with pytest.raises(ValidationError):
            count_failures([], pattern="(")


class TestFailedLoginMonitor:
    @pytest.fixture
    def auth_log(self, tmp_path):
        path = tmp_path / "auth.log"
        path.write_text(AUTH_LOG)
        return path

    @pytest.mark.asyncio
    async def test_scan_with_whitelist(self, auth_log, runner):
        monitor = FailedLoginMonitor(str(auth_log), threshold=3, period_minutes=0, whitelist={"10.0.0.2"}, runner=runner)
        report = await monitor.scan(now=NOW)
        assert [o.ip for o in report.offenders] == ["203.0.113.5", "198.51.100.7", "192.0.2.99"]
        assert [o.ip for o in report.alerts] == ["203.0.113.5"]
        assert report.blocked == []

    @pytest.mark.asyncio
    async def test_block_with_iptables(self, auth_log, tmp_path, runner):
        blocked_file = tmp_path / "blocked.txt"
        with patch.object(failed_logins, "require_root"), patch.object(failed_logins, "command_exists", return_value=False):
            monitor = FailedLoginMonitor(
                str(auth_log), threshold=2, block=True, block_threshold=3,
                runner=runner, blocked_file=blocked_file,
            )
            report = await monitor.scan(now=NOW)
            again = await monitor.scan(now=NOW)

        assert report.blocked == ["203.0.113.5"]
        runner.run.assert_awaited_once_with(["iptables", "-A", "INPUT", "-s", "203.0.113.5", "-j", "DROP"], timeout=60)
        assert blocked_file.read_text() == "203.0.113.5\n"
        assert again.blocked == []
        assert again.alerts[0].blocked

    @pytest.mark.asyncio
    async def test_block_with_firewalld(self, auth_log, tmp_path, runner):
        with patch.object(failed_logins, "require_root"), patch.object(failed_logins, "command_exists", return_value=True):
            monitor = FailedLoginMonitor(
                str(auth_log), threshold=3, block=True, block_threshold=3,
                runner=runner, blocked_file=tmp_path / "blocked.txt",
            )
            await monitor.scan(now=NOW)
        calls = [c.args[0] for c in runner.run.call_args_list]
        assert calls == [
            ["firewall-cmd", "--permanent", "--add-rich-rule=rule family='ipv4' source address='203.0.113.5' reject"],
            ["firewall-cmd", "--reload"],
        ]

    @pytest.mark.asyncio
    async def test_failed_block_not_recorded(self, auth_log, tmp_path, runner):
        runner.run.return_value = fail("iptables: Permission denied")
        blocked_file = tmp_path / "blocked.txt"
        with patch.object(failed_logins, "require_root"), patch.object(failed_logins, "command_exists", return_value=False):
            monitor = FailedLoginMonitor(str(auth_log), threshold=3, block=True, block_threshold=3, runner=runner, blocked_file=blocked_file)
            report = await monitor.scan(now=NOW)
        assert report.blocked == []
        assert not blocked_file.exists()

    @pytest.mark.asyncio
    async def test_run_once_notifies_and_writes_report(self, auth_log, tmp_path, runner):
        notifier = AsyncMock()
        report_file = tmp_path / "report.txt"
        monitor = FailedLoginMonitor(str(auth_log), threshold=3, period_minutes=0, notifier=notifier, runner=runner)
        report = await monitor.run_once("web1", str(report_file))

        assert len(report.alerts) == 1
        subject, body = notifier.send.await_args.args
        assert subject == "Failed login alert on web1"
        assert "3 failed attempts from IP: 203.0.113.5" in body
        assert "Threshold: 3 failed attempts" in report_file.read_text()

    @pytest.mark.asyncio
    async def test_daemon_iterations(self, auth_log, runner):
        monitor = FailedLoginMonitor(str(auth_log), threshold=100, period_minutes=0, runner=runner)
        with patch.object(monitor, "run_once", AsyncMock()) as run_once:
            await monitor.run_daemon("web1", 0, iterations=3)
        assert run_once.await_count == 3

    def test_missing_log_file(self, tmp_path):
        with pytest.raises(ValidationError):
            FailedLoginMonitor(str(tmp_path / "missing.log"))

    def test_detect_auth_log(self, tmp_path):
        secure = tmp_path / "secure"
        secure.write_text("")
        assert detect_auth_log([str(tmp_path / "auth.log"), str(secure)]) == str(secure)
        with pytest.raises(ValidationError):
            detect_auth_log([str(tmp_path / "nope")])

    def test_load_whitelist(self, tmp_path):
        path = tmp_path / "whitelist.txt"
        path.write_text("# office\n10.0.0.2  vpn gateway\n192.168.1.1\n")
        assert load_whitelist(str(path)) == {"10.0.0.2", "192.168.1.1"}
        assert load_whitelist(None) == set()

    @pytest.mark.asyncio
    async def test_report_formatting(self, auth_log, runner):
        monitor = FailedLoginMonitor(str(auth_log), threshold=3, period_minutes=0, runner=runner)
        report = await monitor.scan(now=NOW)
        table = offenders_table(report.offenders)
        assert table.splitlines()[1].split() == ["203.0.113.5", "3", "no"]
        message = alert_message(report, 3, "web1")
        assert message.startswith("Failed login alert on web1\nLog file: ")


# ============================================================================
# password-policy
# ============================================================================

CHAGE_OUTPUT = """Last password change\t\t\t\t\t: Jan 10, 2024
Password expires\t\t\t\t\t: never
Password inactive\t\t\t\t\t: never
Account expires\t\t\t\t\t\t: never
Minimum number of days between password change\t\t: 1
Maximum number of days between password change\t\t: 90
Number of days of warning before password expires\t: 7"""

PASSWD = """root:x:0:0:root:/root:/bin/bash
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
alice:x:1000:1000:Alice:/home/alice:/bin/bash
bob:x:1001:1001:Bob:/home/bob:/bin/zsh
backup-svc:x:1002:1002::/var/backups:/bin/false
"""


@pytest.fixture
def passwd_file(tmp_path):
    path = tmp_path / "passwd"
    path.write_text(PASSWD)
    return str(path)


class TestPasswordPolicyParsing:
    def test_parse_chage(self):
        assert parse_chage(CHAGE_OUTPUT) == {"last_change": "Jan 10, 2024", "min_days": 1, "max_days": 90, "warn_days": 7}

    def test_parse_chage_never_and_defaults(self):
        parsed = parse_chage("Maximum number of days between password change : never\n")
        assert parsed["max_days"] == -1
        assert parsed["min_days"] == 0
        assert parsed["warn_days"] == 7

    def test_parse_passwd_status(self):
        assert parse_passwd_status("alice P 01/10/2024 1 90 7 30") == {"state": "P", "inactive_days": 30}
        assert parse_passwd_status("bob LK 01/10/2024 0 99999 7 -1") == {"state": "LK", "inactive_days": -1}

    def test_parse_passwd_skips_malformed(self):
        entries = parse_passwd(PASSWD + "broken:line\n")
        assert [e.user for e in entries] == ["root", "daemon", "alice", "bob", "backup-svc"]
        assert not entries[1].login_shell
        assert entries[2].login_shell

    def test_load_policy_file(self, tmp_path):
        path = tmp_path / "policy.conf"
        path.write_text("# site policy\nMAX_PASS_DAYS=60\nexport PASS_WARN_DAYS='14'\nUNRELATED=1\n")
        policy = load_policy_file(str(path), PasswordPolicy())
        assert policy == PasswordPolicy(min_days=1, max_days=60, warn_days=14, inactive_days=30)

    def test_load_policy_file_rejects_non_numbers(self, tmp_path):
        path = tmp_path / "policy.conf"
        path.write_text("MIN_PASS_DAYS=one\n")
        with pytest.raises(ValidationError, match="MIN_PASS_DAYS"):
            load_policy_file(str(path), PasswordPolicy())
        with pytest.raises(ValidationError):
            load_policy_file(str(tmp_path / "missing.conf"), PasswordPolicy())


class TestPasswordPolicyEvaluation:
    def test_compliant(self):
        audit = evaluate(PasswordAudit(user="a", min_days=1, max_days=90, warn_days=7, inactive_days=30), PasswordPolicy())
        assert audit.compliant
        assert audit.issues == []

    def test_each_rule_reports_an_issue(self):
        audit = evaluate(PasswordAudit(user="a", min_days=0, max_days=99999, warn_days=3, inactive_days=-1), PasswordPolicy())
        assert not audit.compliant
        assert len(audit.issues) == 4
        assert audit.issues[0].startswith("Minimum password age (0 days)")

    def test_never_expiring_password_is_not_compliant(self):
        audit = evaluate(PasswordAudit(user="a", min_days=1, max_days=-1, warn_days=7, inactive_days=30), PasswordPolicy())
        assert not audit.compliant

    def test_lock_state_is_informational(self):
        audit = evaluate(PasswordAudit(user="a", min_days=1, max_days=90, warn_days=7, inactive_days=30), PasswordPolicy(), "LK")
        assert audit.compliant
        assert audit.issues == ["Account is locked"]


class TestPasswordPolicyChecker:
    @pytest.mark.asyncio
    async def test_default_selects_login_accounts(self, runner, passwd_file):
        checker = PasswordPolicyChecker(runner=runner, passwd_file=passwd_file)
        assert await checker.select_users() == ["alice", "bob"]
        assert await checker.select_users(include_system=True) == ["root", "alice", "bob"]

    @pytest.mark.asyncio
    async def test_users_and_groups(self, runner, passwd_file):
        async def fake_run(argv, timeout=None, env=None):
            if argv == ["getent", "group", "devs"]:
                return ok("devs:x:2000:bob")
            if argv == ["getent", "group", "alice"]:
                return ok("alice:x:1000:")
            return fail("", exit_code=2)

        runner.run.side_effect = fake_run
        checker = PasswordPolicyChecker(runner=runner, passwd_file=passwd_file)
        users = await checker.select_users(users=["bob", "ghost"], groups=["devs", "alice", "nogroup"])
        assert users == ["bob", "alice"]

    @pytest.mark.asyncio
    async def test_all_flag_adds_remaining_accounts(self, runner, passwd_file):
        checker = PasswordPolicyChecker(runner=runner, passwd_file=passwd_file)
        assert await checker.select_users(users=["bob"], all_users=True) == ["bob", "alice"]

    @pytest.mark.asyncio
    async def test_audit_user(self, runner):
        async def fake_run(argv, timeout=None, env=None):
            assert env == {"LC_ALL": "C"}
            if argv[0] == "chage":
                return ok(CHAGE_OUTPUT)
            return ok("alice P 01/10/2024 1 90 7 30")

        runner.run.side_effect = fake_run
        with patch.object(password_policy, "require_commands"):
            audits = await PasswordPolicyChecker(runner=runner).check(["alice"])
        assert audits[0].compliant
        assert audits[0].inactive_days == 30
        assert audits[0].last_change == "Jan 10, 2024"

    @pytest.mark.asyncio
    async def test_unreadable_account_is_not_compliant(self, runner):
        runner.run.return_value = fail("chage: user 'ghost' does not exist")
        audit = await PasswordPolicyChecker(runner=runner).audit_user("ghost")
        assert not audit.compliant
        assert audit.issues == ["Could not read password aging information"]

    def test_render_report(self):
        audits = [
            evaluate(PasswordAudit(user="alice", min_days=0, max_days=90, warn_days=7, inactive_days=30), PasswordPolicy()),
        ]
        now = datetime(2024, 6, 1, 12, 0, 0)
        text = password_policy.render_report(audits, PasswordPolicy(), now=now)
        assert "Generated: 2024-06-01 12:00:00" in text
        assert "  Compliant: No" in text
        assert "    - Minimum password age (0 days) is less than required (1 days)" in text

        data = json.loads(password_policy.render_report(audits, PasswordPolicy(), "json", now=now))
        assert data["policy"]["max_days"] == 90
        assert data["users"][0]["user"] == "alice"
        assert data["users"][0]["compliant"] is False
