"""Infrastructure layer - cross-cutting concerns."""

from gpu_governance.infrastructure.config import Config, get_config
from gpu_governance.infrastructure.logging import get_logger, setup_logging
from gpu_governance.infrastructure.metrics import get_metrics, setup_metrics
from gpu_governance.infrastructure.tracing import setup_tracing

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "setup_metrics",
    "get_metrics",
    "setup_tracing",
]
