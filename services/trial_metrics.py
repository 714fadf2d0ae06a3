"""Prometheus collectors for trial transitions and the GitHub identity exchange."""

from __future__ import annotations

from core.logging import get_logger
from services.prometheus_helpers import build_counter, build_histogram

logger = get_logger(__name__)

_TRANSITIONS = build_counter(
    "trial_transitions_total",
    "Trial lifecycle operations grouped by outcome.",
    ("operation", "result"),
)
_IDENTITY_EXCHANGE = build_counter(
    "trial_identity_exchange_total",
    "GitHub code-for-identity exchanges grouped by outcome.",
    ("result",),
)
_IDENTITY_LATENCY = build_histogram(
    "trial_identity_exchange_seconds",
    "Latency of the GitHub code-for-identity exchange.",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
)


def record_transition(operation: str, result: str) -> None:
    if _TRANSITIONS is None:
        return
    _TRANSITIONS.labels(operation=operation, result=result).inc()


def record_identity_exchange(result: str, elapsed_seconds: float) -> None:
    if _IDENTITY_EXCHANGE is not None:
        _IDENTITY_EXCHANGE.labels(result=result).inc()
    if _IDENTITY_LATENCY is not None:
        try:
            _IDENTITY_LATENCY.observe(max(0.0, elapsed_seconds))
        except ValueError:
            logger.debug("Failed to observe identity exchange latency=%s", elapsed_seconds)


__all__ = ["record_identity_exchange", "record_transition"]
