"""Tests for the scripthub entry point, argument parsing and config loading."""

import argparse
import json
from unittest.mock import AsyncMock, patch

import pytest

from scripthub import config, main as cli
from scripthub.errors import PrerequisiteError, ValidationError
from scripthub.schemas.models import CheckStatus, DiskUsage, PasswordAudit
from scripthub.services import disk_usage, password_policy


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "hosts.csv"
    path.write_text("host;port\nweb1;22\n", encoding="utf-8")
    return path


# ============================================================================
# Config
# ============================================================================

class TestConfig:
    def test_missing_default_file_is_empty(self, tmp_path):
        with patch.object(config, "CONFIG_PATH", str(tmp_path / "absent.yaml")):
            assert config.load_config() == {}

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            config.load_config(str(tmp_path / "absent.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert config.load_config(str(path)) == {}

    @pytest.mark.parametrize("content", ["- a\n- b\n", "key: [unclosed\n"])
    def test_invalid_content(self, tmp_path, content):
        path = tmp_path / "config.yaml"
        path.write_text(content)
        with pytest.raises(ValidationError):
            config.load_config(str(path))

    def test_command_defaults(self):
        cfg = {"port-scan": {"threads": 50, "no-resolve": True}, "disk-usage": None}
        assert config.command_defaults(cfg, "port-scan") == {"threads": 50, "no_resolve": True}
        assert config.command_defaults(cfg, "disk-usage") == {}
        assert config.command_defaults(cfg, "backup") == {}
        with pytest.raises(ValidationError):
            config.command_defaults({"backup": "fast"}, "backup")

    def test_logging_defaults(self):
        assert config.logging_defaults({"log_level": "error", "color": "never"}) == {"log_level": "ERROR", "color": "never"}
        assert config.logging_defaults({"color": False})["color"] == "never"
        with patch.object(config, "LOG_LEVEL", "WARNING"), patch.object(config, "COLOR_MODE", "always"):
            assert config.logging_defaults({}) == {"log_level": "WARNING", "color": "always"}

    @pytest.mark.parametrize("cfg", [{"log_level": "LOUD"}, {"color": "sometimes"}])
    def test_logging_defaults_invalid(self, cfg):
        with pytest.raises(ValidationError):
            config.logging_defaults(cfg)

    def test_state_path_creates_directory(self, tmp_path):
        with patch.object(config, "STATE_DIR", str(tmp_path / "state")):
            path = config.state_path("blocked_ips.txt")
        assert path == tmp_path / "state" / "blocked_ips.txt"
        assert path.parent.is_dir()


# ============================================================================
# Parser
# ============================================================================

class TestParser:
    def test_every_command_has_a_handler(self):
        parser = cli.build_parser()
        subparsers = next(a for a in parser._actions if isinstance(a, argparse._SubParsersAction))
        expected = {
            "ssh-run", "cleanup-logs", "backup", "port-scan", "bandwidth", "dns-latency", "blacklist",
            "firewall-report", "disk-usage", "http-check", "ssl-expiry", "resource-monitor", "service-check",
            "file-integrity", "failed-logins", "docker-cleanup", "k8s-nodes", "gcp-snapshots",
            "rotate-log", "csv-to-json", "public-ip", "password-policy", "docker-monitor", "update-packages",
            "deploy-app",
        }
        assert expected <= set(subparsers.choices)
        for name, sub in subparsers.choices.items():
            assert callable(sub.get_default("handler")), name

    def test_config_defaults_apply_and_flags_win(self):
        parser = cli.build_parser({"csv-to-json": {"delimiter": ";", "pretty": True}})
        args = parser.parse_args(["csv-to-json", "in.csv"])
        assert (args.delimiter, args.pretty) == (";", True)
        assert parser.parse_args(["csv-to-json", "in.csv", "-d", "|"]).delimiter == "|"

    def test_command_is_required(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])
        assert exc.value.code == 0
        assert capsys.readouterr().out.startswith("scripthub ")

    def test_positive_int_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["rotate-log", "app.log", "-n", "0"])

    @pytest.mark.parametrize("flags,level", [
        ({"verbose": True}, "DEBUG"),
        ({"quiet": True}, "WARNING"),
        ({"quiet": True, "log_level": "ERROR"}, "ERROR"),
        ({}, "INFO"),
    ])
    def test_log_level(self, flags, level):
        namespace = argparse.Namespace(log_level=flags.pop("log_level", "INFO"), **flags)
        assert cli._log_level(namespace) == level


# ============================================================================
# main()
# ============================================================================

class TestMain:
    def test_csv_to_json(self, csv_file, tmp_path):
        out = tmp_path / "hosts.json"
        code = cli.main(["csv-to-json", str(csv_file), "-d", ";", "-t", "-o", str(out)])
        assert code == 0
        assert json.loads(out.read_text()) == [{"host": "web1", "port": 22}]

    def test_config_file_supplies_defaults(self, csv_file, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("csv-to-json:\n  delimiter: ';'\n  array: true\n")
        out = tmp_path / "hosts.json"
        code = cli.main(["--config", str(cfg), "csv-to-json", str(csv_file), "-o", str(out)])
        assert code == 0
        assert json.loads(out.read_text()) == [["host", "port"], ["web1", "22"]]

    def test_config_file_sets_logging_defaults(self, csv_file, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("log_level: ERROR\ncolor: never\n")
        with patch("scripthub.main.setup_logging") as setup:
            assert cli.main(["--config", str(cfg), "csv-to-json", str(csv_file), "-o", str(tmp_path / "out.json")]) == 0
        setup.assert_called_once_with("ERROR", color="never", debug=False)

    def test_flags_override_config_logging(self, csv_file, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("log_level: ERROR\ncolor: always\n")
        argv = ["--config", str(cfg), "--log-level", "debug", "--no-color", "csv-to-json", str(csv_file), "-o", str(tmp_path / "out.json")]
        with patch("scripthub.main.setup_logging") as setup:
            assert cli.main(argv) == 0
        setup.assert_called_once_with("DEBUG", color="never", debug=False)

    def test_bad_config_exits_1(self, tmp_path, csv_file):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("csv-to-json: fast\n")
        assert cli.main(["--config", str(cfg), "csv-to-json", str(csv_file)]) == 1

    def test_validation_error_exits_1(self, tmp_path, capsys):
        assert cli.main(["--no-color", "csv-to-json", str(tmp_path / "missing.csv")]) == 1
        assert "[ERROR] Input file not found" in capsys.readouterr().err

    def test_error_exit_code_is_kept(self, csv_file):
        with patch("scripthub.commands.utils.convert_file", side_effect=PrerequisiteError("jq missing", exit_code=3)):
            assert cli.main(["csv-to-json", str(csv_file)]) == 3

    def test_interrupt_exits_130(self, csv_file):
        with patch("scripthub.commands.utils.convert_file", side_effect=KeyboardInterrupt):
            assert cli.main(["csv-to-json", str(csv_file)]) == 130

    def test_rotate_log(self, tmp_path):
        log = tmp_path / "app.log"
        log.write_text("line\n")
        assert cli.main(["rotate-log", str(log), "-f", "-c"]) == 0
        assert log.stat().st_size == 0
        assert len(list(tmp_path.glob("app.log.*.gz"))) == 1

    def test_disk_usage_exit_code_and_report(self, tmp_path):
        entries = [
            DiskUsage(filesystem="/dev/sda1", size_kb=100, used_kb=95, avail_kb=5, percent=95, mount="/", status=CheckStatus.CRITICAL),
            DiskUsage(filesystem="/dev/sdb1", size_kb=100, used_kb=10, avail_kb=90, percent=10, mount="/data", status=CheckStatus.OK),
        ]
        out = tmp_path / "disk.txt"
        with patch.object(disk_usage.DiskUsageChecker, "check", AsyncMock(return_value=entries)):
            code = cli.main(["disk-usage", "-q", "-n", "-o", str(out)])
        assert code == 1
        lines = out.read_text().splitlines()
        assert len(lines) == 1
        assert lines[0].startswith("/dev/sda1")

    def test_password_policy_report_and_exit_code(self, tmp_path):
        audits = [
            PasswordAudit(user="alice", compliant=True, min_days=1, max_days=90, warn_days=7, inactive_days=30),
            PasswordAudit(user="bob", compliant=False, max_days=99999, issues=["Maximum password age (99999 days) is greater than allowed (60 days)"]),
        ]
        report = tmp_path / "policy.json"
        checker = password_policy.PasswordPolicyChecker
        with patch.object(checker, "select_users", AsyncMock(return_value=["alice", "bob"])), \
                patch.object(checker, "check", AsyncMock(return_value=audits)):
            code = cli.main(["password-policy", "-M", "60", "-j", "-r", str(report)])
        assert code == 1
        data = json.loads(report.read_text())
        assert data["policy"]["max_days"] == 60
        assert [u["user"] for u in data["users"]] == ["alice", "bob"]

    def test_deploy_app_rejects_missing_source(self, tmp_path, capsys):
        code = cli.main(["deploy-app", "-s", str(tmp_path / "missing"), "-d", str(tmp_path / "www"), "-t", "static"])
        assert code == 1
        assert "Source directory does not exist" in capsys.readouterr().err
