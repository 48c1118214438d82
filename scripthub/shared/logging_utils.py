"""
Console Logging - Single Source of Truth for Colors and Log Lines

Every ScriptHub tool logs through the "scripthub" namespace logger. This
module owns the formatter, the stdout/stderr split and the color table;
colors are defined HERE ONLY.

Usage:
    from scripthub.shared.logging_utils import setup_logging, log_success

    setup_logging("INFO", color="auto")
    logger = logging.getLogger("scripthub.backup")
    logger.info("Creating backup")          # 2024-01-01 12:00:00 [INFO] Creating backup
    log_success(logger, "Backup created")   # ... [SUCCESS] Backup created

Line format:
    YYYY-mm-dd HH:MM:SS [LEVEL] message

WARNING and ERROR lines go to stderr, everything else to stdout.
"""

import logging
import os
import sys
from enum import Enum
from typing import Dict, Optional, TextIO


class LogLevel(str, Enum):
    """Levels the console logger understands."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, LogLevel.SUCCESS.value)

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"

# ANSI codes - the only color definitions in the project
COLORS: Dict[str, str] = {
    "red": "\033[0;31m",
    "green": "\033[0;32m",
    "yellow": "\033[0;33m",
    "blue": "\033[0;34m",
    "cyan": "\033[0;36m",
}

LEVEL_COLORS: Dict[str, str] = {
    LogLevel.DEBUG.value: "cyan",
    LogLevel.INFO.value: "blue",
    LogLevel.SUCCESS.value: "green",
    LogLevel.WARNING.value: "yellow",
    LogLevel.ERROR.value: "red",
    "CRITICAL": "red",
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_color_enabled = False


# ============================================================================
# Color handling
# ============================================================================

def should_use_color(mode: str = "auto", stream: Optional[TextIO] = None) -> bool:
    """Resolve an auto/always/never color mode against the terminal."""
    mode = (mode or "auto").lower()
    if mode == "always":
        return True
    if mode == "never":
        return False
    stream = stream or sys.stdout
    term = os.environ.get("TERM", "")
    return bool(hasattr(stream, "isatty") and stream.isatty() and term and term != "dumb")


def color_enabled() -> bool:
    return _color_enabled


def colorize(text: str, color: str, bold: bool = False) -> str:
    """Wrap text in an ANSI color when color output is on."""
    if not _color_enabled or color not in COLORS:
        return text
    prefix = COLORS[color] + (BOLD if bold else "")
    return f"{prefix}{text}{RESET}"


class ColorFormatter(logging.Formatter):
    """Formats `ts [LEVEL] msg`, coloring the level tag when enabled."""

    def __init__(self, use_color: bool = False):
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().format(record)

        original = record.levelname
        color = COLORS.get(LEVEL_COLORS.get(original, ""), "")
        record.levelname = f"{color}{original}{RESET}"
        try:
            line = super().format(record)
        finally:
            record.levelname = original
        timestamp, _, rest = line.partition(" [")
        return f"{DIM}{timestamp}{RESET} [{rest}"


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def setup_logging(
    level: str = "INFO",
    color: str = "auto",
    debug: bool = False,
) -> logging.Logger:
    """
    Configure the scripthub namespace logger without duplicating handlers.

    Args:
        level: DEBUG, INFO, SUCCESS, WARNING or ERROR
        color: auto, always or never
        debug: force DEBUG regardless of level

    Returns:
        The configured namespace logger
    """
    global _color_enabled
    _color_enabled = should_use_color(color)

    level_name = "DEBUG" if debug else (level or "INFO").upper()
    numeric = logging.getLevelName(level_name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    hub_logger = logging.getLogger("scripthub")
    hub_logger.setLevel(numeric)
    # Don't propagate to root logger (prevents duplicates)
    hub_logger.propagate = False

    for handler in list(hub_logger.handlers):
        hub_logger.removeHandler(handler)

    formatter = ColorFormatter(use_color=_color_enabled)

    out_handler = logging.StreamHandler(sys.stdout)
    out_handler.addFilter(_BelowWarning())
    out_handler.setFormatter(formatter)

    err_handler = logging.StreamHandler(sys.stderr)
    err_handler.setLevel(logging.WARNING)
    err_handler.setFormatter(formatter)

    hub_logger.addHandler(out_handler)
    hub_logger.addHandler(err_handler)

    # Silence noisy httpx logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return hub_logger


def log_success(logger: logging.Logger, message: str) -> None:
    logger.log(SUCCESS_LEVEL, message)


# ============================================================================
# Console helpers
# ============================================================================

def print_header(title: str, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    rule = "=" * 60
    stream.write(colorize(f"{rule}\n  {title}\n{rule}", "blue", bold=True) + "\n")


def print_section(title: str, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    stream.write("\n" + colorize(f"--- {title} ---", "cyan", bold=True) + "\n")


def status_ok(message: str, stream: Optional[TextIO] = None) -> None:
    (stream or sys.stdout).write(f"[{colorize('OK', 'green')}] {message}\n")


def status_failed(message: str, stream: Optional[TextIO] = None) -> None:
    (stream or sys.stdout).write(f"[{colorize('FAILED', 'red')}] {message}\n")


def status_warn(message: str, stream: Optional[TextIO] = None) -> None:
    (stream or sys.stdout).write(f"[{colorize('WARN', 'yellow')}] {message}\n")


def render_bar(fraction: float, width: int = 50) -> str:
    """
    Fixed-width bar colored by fill level.

    Green below 50%, yellow below 85%, red at or above.
    """
    fraction = max(0.0, min(1.0, fraction))
    filled = int(round(fraction * width))
    bar = "#" * filled + "-" * (width - filled)
    if fraction < 0.5:
        color = "green"
    elif fraction < 0.85:
        color = "yellow"
    else:
        color = "red"
    return f"[{colorize(bar, color)}]"


def progress_bar(current: int, total: int, label: str = "", stream: Optional[TextIO] = None) -> None:
    """Redraw a progress line in place on stderr."""
    stream = stream or sys.stderr
    fraction = current / total if total else 1.0
    stream.write(f"\r{render_bar(fraction, width=40)} {current}/{total} {label}")
    if current >= total:
        stream.write("\n")
    stream.flush()
