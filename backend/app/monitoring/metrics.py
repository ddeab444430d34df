"""Metric definitions for the realtime chat core."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_sessions",
    "Number of open realtime sessions handled by this process.",
    label_names=("scope",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime frames processed by the gateway.",
    label_names=("event", "direction"),
)

realtime_delivery_failures_total = registry.counter(
    "realtime_delivery_failures_total",
    "Number of sessions a fan-out could not reach.",
    label_names=("event",),
)

realtime_messages_total = registry.counter(
    "realtime_messages_total",
    "Number of chat messages persisted by the dispatch pipeline.",
    label_names=("kind",),
)

realtime_typing_expired_total = registry.counter(
    "realtime_typing_expired_total",
    "Number of typing indicators cleared by their TTL.",
)

polling_requests_total = registry.counter(
    "polling_requests_total",
    "Number of fallback polling requests served.",
    label_names=("resource",),
)
