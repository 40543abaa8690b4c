"""Application layer for GPU governance.

Orchestrates domain services to provide high-level functionality.
"""

from gpu_governance.application.coordinator import GovernanceEngine
from gpu_governance.application.event_dispatcher import EventDispatcher

__all__ = [
    "GovernanceEngine",
    "EventDispatcher",
]
