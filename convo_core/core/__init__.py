"""Core utilities shared across the engine."""

from convo_core.core.logging import configure_logging

__all__ = ["configure_logging"]
