"""Unit tests for logging configuration."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog

from fleetdeploy.infrastructure.observability.logging import setup_logging


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


class TestLogging:
    def test_setup_logging_info(self) -> None:
        setup_logging("INFO")
        assert structlog.is_configured()

    def test_setup_logging_console(self) -> None:
        setup_logging("DEBUG", json_output=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_setup_logging_json(self) -> None:
        setup_logging("WARNING")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.contextvars.merge_contextvars in processors

    def test_unknown_level_falls_back(self) -> None:
        setup_logging("CHATTY")  # Should not raise
