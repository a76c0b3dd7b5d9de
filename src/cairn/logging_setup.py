"""Logging configuration for the CLI.

Library modules only create ``logging.getLogger(__name__)`` loggers; handlers
are installed here, once, by the CLI entry point.
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

_NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "openai")


def setup_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Route log records through rich.

    Level: DEBUG with *verbose*, else ``CAIRN_LOG_LEVEL`` (default INFO).
    """
    level_name = "DEBUG" if verbose else os.environ.get("CAIRN_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
        markup=False,
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    logging.getLogger("cairn").setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
