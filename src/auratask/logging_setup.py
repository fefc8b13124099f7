# src/auratask/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that only matter when something breaks.
NOISY_LIBRARIES: tuple[str, ...] = ("httpx", "httpcore", "openai")

# Our own modules that log on every write or realtime push.
_CHATTY_MODULES: tuple[str, ...] = (
    "auratask.backend.sqlite_gateway",
    "auratask.store.local_storage",
)


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the REPL readable while tasks are being edited:
    store and analyzer logs pass, persistence chatter needs WARNING+,
    everything foreign (py.warnings included) needs ERROR+.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name.startswith("auratask."):
            if name.startswith(_CHATTY_MODULES):
                return record.levelno >= logging.WARNING
            return True

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/auratask",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 2_000_000,
    backups: int = 3,
    quiet: Iterable[str] = NOISY_LIBRARIES,
) -> Path:
    """
    Route everything to a rotating file under log_dir and a filtered console on stderr.

    Safe to call again: previous root handlers are replaced. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "auratask.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)

    for lib in quiet:
        logging.getLogger(lib).setLevel(logging.WARNING)

    return log_file
