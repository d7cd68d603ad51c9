"""Logging configuration for mesh_operator."""

from mesh_operator.logging.config import configure_logging, reconcile_context

__all__ = ["configure_logging", "reconcile_context"]
