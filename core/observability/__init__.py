"""
Observability Module for the reconciliation engine

Provides:
- Structured logging with correlation IDs
- Per-queue job metrics
"""

from core.observability.metrics import JobMetrics

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "JobMetrics",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
