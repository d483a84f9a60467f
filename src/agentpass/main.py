"""
main.py — agentpass Entry Point

Usage:
    agentpass "Find and fix the flaky test"
    agentpass --auto-approve "Run the linters and fix what they report"
    agentpass --no-human --max-passes 20 "Migrate config loading to pydantic"
    agentpass --log-level DEBUG --config path/to/config.yaml "..."
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from dotenv import load_dotenv


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agentpass",
        description="agentpass — plan-driven autonomous coding agent for your terminal",
    )
    parser.add_argument("prompt", nargs="+", help="Task for the agent")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $AGENTPASS_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        default=False,
        help="Run every plan command without asking for approval",
    )
    parser.add_argument(
        "--no-human",
        action="store_true",
        default=False,
        help="Keep working without waiting for replies until the agent says done",
    )
    parser.add_argument(
        "--max-passes",
        type=int,
        default=None,
        help="Override agent.max_session_passes for this run",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values or validate_all() finds cross-field problems.
    """
    from pydantic import ValidationError

    from agentpass.config.settings import ConfigError, load_settings
    from agentpass.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    if args.auto_approve:
        settings.agent.auto_approve = True

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    cfg = settings.logging
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=cfg.json_format,
        console_output=cfg.console_output,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.backup_count,
    )
    return settings, get_logger("agentpass.main")


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings, log = bootstrap(args)

    log.info(
        "agentpass.starting",
        model=settings.model,
        auto_approve=settings.agent.auto_approve,
        no_human=args.no_human,
    )

    from agentpass.interfaces.cli import run_cli
    from agentpass.brain.llm_client import LLMError

    try:
        result = await run_cli(
            settings,
            " ".join(args.prompt),
            no_human=args.no_human,
            max_passes=args.max_passes,
            show_debug=(args.log_level or settings.log_level) == "DEBUG",
        )
    except LLMError as e:
        log.error("agentpass.llm_init_failed", error=str(e), error_type=type(e).__name__)
        print(f"\n❌  Failed to initialize the OpenAI client: {e}\n", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        log.info("agentpass.interrupted")
        return 130

    log.info("agentpass.finished", passes=result.passes, stop_reason=result.stop_reason)
    return 1 if result.stop_reason == "error" else 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
