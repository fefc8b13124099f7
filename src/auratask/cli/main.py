# src/auratask/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds the AppStore, resumes (or starts) a session,
then runs the console REPL until /exit, EOF or Ctrl+C.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..cli.bootstrap import AppContext, create_app, shutdown_app
from ..cli.commands import registry as command_registry
from ..config import get_settings
from ..core.state import AppState
from ..logging_setup import setup_logging
from ..store.gamification import NoticeKind

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


class ConsoleNotifier:
    """Prints mutation feedback as it happens."""

    def success(self, message: str) -> None:
        logger.debug("OK: %s", message)
        _print_ts(f"[OK] {message}")

    def error(self, message: str) -> None:
        logger.info("ERROR: %s", message)
        _print_ts(f"[ERROR] {message}")


def _watch_notices(ctx: AppContext) -> None:
    """Print each gamification notice once, when it appears."""
    seen: dict[NoticeKind, object] = {}

    def _on_state(_state: AppState) -> None:
        for kind in NoticeKind:
            value = ctx.store.notices.get(kind)
            if value is None:
                seen.pop(kind, None)
                continue
            if seen.get(kind) is value:
                continue
            seen[kind] = value
            if kind == NoticeKind.AURA_AWARD:
                _print_ts(f"[AURA] +{value.points} ({value.reason})")
            elif kind == NoticeKind.LEVEL_UP:
                _print_ts(f"[LEVEL UP] You reached level {value}!")
            else:
                _print_ts(f"[ACHIEVEMENT] {value.name}: {value.description}")

    ctx.store.subscribe(_on_state)


async def run_console_loop(ctx: AppContext) -> None:
    logger.info("Console started.")
    _print_ts("[CONSOLE] Use /help for commands, /tasks to list, /exit to quit.\n")

    def emit(text: str) -> None:
        _print_ts(text)

    while True:
        try:
            line = (await asyncio.to_thread(input, ">>> ")).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not line:
            continue

        if line.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        if not line.startswith("/"):
            line = f"/add {line}"

        try:
            reply = await command_registry.handle(ctx, line, emit=emit)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply:
            _print_ts(reply)

    logger.info("Console finished.")


async def amain() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/auratask")
    log_file = setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s (log: %s)...", getattr(settings, "app_name", "auratask"), log_file)

    ctx = create_app(settings=settings, notifier=ConsoleNotifier())
    _watch_notices(ctx)

    try:
        await ctx.store.initialize()
        await run_console_loop(ctx)
    finally:
        await shutdown_app(ctx)
        logger.info("Bye.")


def main() -> None:
    try:
        asyncio.run(amain())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
