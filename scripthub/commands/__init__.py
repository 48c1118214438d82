"""
CLI sub-commands, one module per tool category.

Each module exposes register(subparsers); every sub-command sets a
`handler(args) -> int` default that main() calls.
"""

import argparse
import sys
from typing import List, Optional

from scripthub.services.notifier import Notifier, NotifierConfig


def split_csv(value: Optional[str]) -> List[str]:
    """'a, b,c' -> ['a', 'b', 'c']"""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def notifier_from_args(args: argparse.Namespace) -> Optional[Notifier]:
    config = NotifierConfig(
        email=getattr(args, "email", None),
        slack_webhook=getattr(args, "slack", None),
        telegram_token=getattr(args, "telegram_token", None),
        telegram_chat_id=getattr(args, "telegram_chat_id", None),
        webhook_url=getattr(args, "webhook_url", None),
    )
    return Notifier(config) if config.enabled else None


def confirm(prompt: str) -> bool:
    """Ask a yes/no question on the terminal; anything but y/yes is no."""
    if not sys.stdin.isatty():
        return False
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer") from e
    if number < 1:
        raise argparse.ArgumentTypeError(f"'{value}' must be at least 1")
    return number


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer") from e
    if number < 0:
        raise argparse.ArgumentTypeError(f"'{value}' must not be negative")
    return number


def percent(value: str) -> int:
    number = positive_int(value)
    if number > 100:
        raise argparse.ArgumentTypeError(f"'{value}' must be between 1 and 100")
    return number
