"""Shared pytest configuration and fixtures."""

import shutil
from unittest.mock import AsyncMock, MagicMock

import pytest

from scripthub.services.command_runner import CommandResult

# Binaries the integration tests call for real
INTEGRATION_BINARIES = ("openssl",)


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "integration: marks tests that run real system binaries (openssl)",
    )


def pytest_collection_modifyitems(config, items):
    missing = [name for name in INTEGRATION_BINARIES if shutil.which(name) is None]
    if not missing:
        return

    skip_integration = pytest.mark.skip(reason=f"Missing binaries: {', '.join(missing)}")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(success=True, stdout=stdout, stderr=stderr, exit_code=0)


def fail(stderr: str = "error", exit_code: int = 1, stdout: str = "") -> CommandResult:
    return CommandResult(success=False, stdout=stdout, stderr=stderr, exit_code=exit_code)


@pytest.fixture
def runner():
    """A CommandRunner stand-in; set runner.run.side_effect / return_value per test."""
    mock = MagicMock()
    mock.run = AsyncMock(return_value=ok())
    mock.check = AsyncMock(return_value=ok())
    return mock
