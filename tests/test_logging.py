"""Tests for logging helpers."""

from __future__ import annotations

import io
import logging

from agent_run_engine.logging import get_logger, run_logger, setup_logging


class TestLogging:
    def teardown_method(self) -> None:
        setup_logging("WARNING")

    def test_child_loggers(self) -> None:
        assert get_logger("agent").name == "agent_run_engine.agent"
        assert get_logger("agent_run_engine.stream").name == "agent_run_engine.stream"

    def test_run_logger_tags_conversation(self) -> None:
        stream = io.StringIO()
        setup_logging("INFO", format="%(name)s %(message)s", stream=stream)

        run_logger("agent", "conv-42").info("Setup complete")

        assert stream.getvalue().strip() == "agent_run_engine.agent [conv-42] Setup complete"

    def test_level_filters(self) -> None:
        stream = io.StringIO()
        setup_logging(logging.WARNING, stream=stream)

        get_logger("agent").info("hidden")
        get_logger("agent").warning("shown")

        assert "hidden" not in stream.getvalue()
        assert "shown" in stream.getvalue()

    def test_rich_handler(self) -> None:
        stream = io.StringIO()
        setup_logging("INFO", stream=stream, rich=True)

        get_logger("server").info("listening")

        assert "listening" in stream.getvalue()
