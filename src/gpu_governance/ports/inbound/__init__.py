"""Inbound ports - interfaces offered by the governance engine."""

from gpu_governance.ports.inbound.api import GovernanceAPI

__all__ = [
    "GovernanceAPI",
]
