"""Logging setup: rich console output plus an optional plain-text log file."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from mandi_sync.core.config import LoggingConfig

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler")

_HANDLER_MARK = "_mandi_sync_handler"


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    verbose: bool = False,
    console: Console | None = None,
) -> logging.Logger:
    """Install console (and optional file) handlers on the root logger.

    Safe to call more than once: handlers installed by a previous call
    are replaced, so the CLI and the API server can both invoke it.
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(rich_handler, _HANDLER_MARK, True)
    root.addHandler(rich_handler)

    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        setattr(file_handler, _HANDLER_MARK, True)
        root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
