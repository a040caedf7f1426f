"""NETFORGE Observability package.

Structured logging and Prometheus metrics.
"""

from netforge.observability._logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
