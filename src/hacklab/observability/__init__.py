"""HackLab Observability package.

Structured logging and Prometheus metrics.
"""

from hacklab.observability.logging import LogContext, configure_logging, get_logger
from hacklab.observability.metrics import MetricsCollector, get_metrics

__all__ = ["LogContext", "MetricsCollector", "configure_logging", "get_logger", "get_metrics"]
