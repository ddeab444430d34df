"""Metric registry and realtime metric definitions."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
