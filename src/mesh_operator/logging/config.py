"""Structured logging for the operator.

Everything is routed through structlog on top of the stdlib ``logging``
module so that records from the kubernetes client end up in the same
stream and format as the operator's own events. The stream is stderr:
helm reads the ``post-render`` command's stdout.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Libraries that log every request at DEBUG
NOISY_LOGGERS = ("kubernetes.client.rest", "urllib3")

# Marks the handler installed by configure_logging so a second call replaces it
_HANDLER_NAME = "mesh-operator"


def level_for(verbose: bool, debug: bool) -> int:
    """Map the CLI verbosity flags to a stdlib level."""
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    return logging.WARNING


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer(json_output: bool, debug: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.RichTracebackFormatter(show_locals=debug),
    )


def configure_logging(
    verbose: bool = False,
    debug: bool = False,
    json_output: bool = False,
) -> None:
    """Configure structlog and the root logger.

    Safe to call more than once; the previous handler is replaced.

    Args:
        verbose: Log at INFO.
        debug: Log at DEBUG, with locals in tracebacks.
        json_output: Emit one JSON object per line, for in-cluster log
            collection.
    """
    level = level_for(verbose, debug)
    pre_chain = _pre_chain()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(json_output, debug),
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


@contextmanager
def reconcile_context(controller: str, name: str) -> Iterator[None]:
    """Bind ``controller`` and ``name`` to every log line emitted inside the block.

    Covers loggers that were not explicitly bound, such as the helm client's.
    """
    with structlog.contextvars.bound_contextvars(controller=controller, name=name):
        yield
