"""
ScriptHub - DevOps and SecOps command-line toolkit.

Entry point: builds the sub-command parser, applies per-command defaults
from the YAML config, configures logging and dispatches to the handler.
"""

import argparse
import logging
import sys
from typing import List, Optional

from scripthub import __version__, config
from scripthub.commands import automation, cloud, containers, monitoring, networking, security, utils
from scripthub.errors import ScriptHubError
from scripthub.shared.logging_utils import setup_logging

logger = logging.getLogger("scripthub")

CATEGORIES = (automation, networking, monitoring, security, containers, cloud, utils)


def build_parser(defaults: Optional[dict] = None) -> argparse.ArgumentParser:
    """Build the full parser; defaults maps sub-command name to option defaults."""
    parser = argparse.ArgumentParser(
        prog="scripthub",
        description="DevOps and SecOps toolkit: networking, monitoring, security, containers and cloud helpers.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="FILE", help=f"YAML config file (default: {config.CONFIG_PATH})")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, choices=("DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"), type=str.upper)
    parser.add_argument("--no-color", action="store_true", help="disable colored output")
    parser.add_argument("--debug", action="store_true", default=config.DEBUG_MODE, help="debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    for category in CATEGORIES:
        category.register(subparsers)

    for name, values in (defaults or {}).items():
        if name in subparsers.choices and values:
            subparsers.choices[name].set_defaults(**values)
    return parser


def _command_defaults(cfg: dict, parser: argparse.ArgumentParser) -> dict:
    subparsers = next(a for a in parser._actions if isinstance(a, argparse._SubParsersAction))
    return {name: config.command_defaults(cfg, name) for name in subparsers.choices if name in cfg}


def _log_level(args: argparse.Namespace) -> str:
    if getattr(args, "verbose", False):
        return "DEBUG"
    if getattr(args, "quiet", False) and args.log_level in ("DEBUG", "INFO", "SUCCESS"):
        return "WARNING"
    return args.log_level


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config")
    known, _ = pre.parse_known_args(argv)

    try:
        cfg = config.load_config(known.config)
        logging_defaults = config.logging_defaults(cfg)
        parser = build_parser()
        parser = build_parser(_command_defaults(cfg, parser))
    except ScriptHubError as e:
        setup_logging()
        logger.error(e.message)
        return e.exit_code

    parser.set_defaults(log_level=logging_defaults["log_level"])
    args = parser.parse_args(argv)
    color = "never" if args.no_color else logging_defaults["color"]
    setup_logging(_log_level(args), color=color, debug=args.debug)
    logger.debug(f"scripthub {__version__}: {args.command}")

    try:
        return args.handler(args)
    except ScriptHubError as e:
        logger.error(e.message)
        return e.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
