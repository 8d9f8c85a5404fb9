"""
Logging for the run engine.

Everything logs under the ``agent_run_engine`` logger. Many runs share a
process, so messages about one run go through a ``RunLogger`` that tags
them with the run's conversation id.

Example:
    from agent_run_engine.logging import run_logger, setup_logging

    setup_logging("INFO", rich=True)
    log = run_logger("agent", "conv-42")
    log.info("Setup complete")  # agent_run_engine.agent: [conv-42] Setup complete
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, TextIO

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "agent_run_engine"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_root_logger = logging.getLogger(ROOT_LOGGER_NAME)


def _to_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
    rich: bool = False,
) -> None:
    """
    Configure the package logger. Replaces any handlers set up before.

    Args:
        level: Log level name or number
        format: Format for plain handlers
        stream: Output stream for the plain handler (defaults to stderr)
        file: Also write plain-format logs to this file
        rich: Render console output with rich instead of a plain stream
    """
    level = _to_level(level)
    _root_logger.setLevel(level)
    _root_logger.handlers.clear()

    formatter = logging.Formatter(format or DEFAULT_FORMAT)

    console_handler: logging.Handler
    if rich:
        console_handler = RichHandler(
            console=Console(file=stream or sys.stderr),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        console_handler = logging.StreamHandler(stream or sys.stderr)
        console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    _root_logger.addHandler(console_handler)

    if file:
        file_handler = logging.FileHandler(file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        _root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger for a submodule, e.g. ``get_logger("tools.registry")``."""
    if name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class RunLogger(logging.LoggerAdapter):
    """Prefixes every message with ``[<conversation id>]``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        return f"[{extra.get('conversation_id', '-')}] {msg}", kwargs


def run_logger(name: str, conversation_id: str) -> RunLogger:
    """Logger for one run of ``name``'s submodule."""
    return RunLogger(get_logger(name), {"conversation_id": conversation_id})
