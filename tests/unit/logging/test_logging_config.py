"""Unit tests for logging configuration."""

from __future__ import annotations

import logging
import sys
from typing import Any

import pytest
import structlog

from mesh_operator.logging.config import (
    NOISY_LOGGERS,
    configure_logging,
    level_for,
    reconcile_context,
)


@pytest.fixture(autouse=True)
def _reset_root_logger() -> Any:
    """Remove handlers added by configure_logging after each test."""
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
    structlog.reset_defaults()


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.mark.parametrize(
        ("verbose", "debug", "expected"),
        [
            (False, False, logging.WARNING),
            (True, False, logging.INFO),
            (False, True, logging.DEBUG),
            (True, True, logging.DEBUG),
        ],
    )
    def test_sets_root_level(self, verbose: bool, debug: bool, expected: int) -> None:
        """Root logger level should follow the verbosity flags."""
        configure_logging(verbose=verbose, debug=debug)
        assert logging.getLogger().level == expected

    def test_logs_go_to_stderr(self) -> None:
        """Logs must not mix with stdout, which carries post-renderer output."""
        configure_logging()
        handler = logging.getLogger().handlers[-1]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr

    def test_json_output_uses_json_renderer(self) -> None:
        """JSON mode should render records with the JSON renderer."""
        configure_logging(json_output=True)
        formatter = logging.getLogger().handlers[-1].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_quiets_noisy_loggers_in_debug(self) -> None:
        """Chatty client libraries should stay at INFO even in debug mode."""
        configure_logging(debug=True)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.INFO


@pytest.mark.unit
class TestReconcileContext:
    """Tests for reconcile_context."""

    def test_binds_and_clears_context(self) -> None:
        """Context is visible inside the block and gone afterwards."""
        with reconcile_context("mesh", "default"):
            assert structlog.contextvars.get_contextvars() == {
                "controller": "mesh",
                "name": "default",
            }
        assert structlog.contextvars.get_contextvars() == {}


@pytest.mark.unit
class TestHandlerReplacement:
    """Tests for repeated configuration."""

    def test_second_call_replaces_handler(self) -> None:
        """Reconfiguring must not duplicate every log line."""
        configure_logging()
        configure_logging(debug=True)
        names = [h.get_name() for h in logging.getLogger().handlers]
        assert names.count("mesh-operator") == 1

    def test_level_for_flags(self) -> None:
        assert level_for(verbose=False, debug=False) == logging.WARNING
        assert level_for(verbose=True, debug=True) == logging.DEBUG
