"""Inbound port interfaces for the governance engine.

Inbound ports define what the system offers to external clients.
Adapters implement these with REST, CLI, etc.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.partition import DevicePartitionState, PartitionScheme
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import AdmissionDecision, WorkloadRequest
from gpu_governance.domain.services.profile_registry import ProfileValidation
from gpu_governance.domain.value_objects.identifiers import DeviceId, ProfileId, RequestId, TeamId
from gpu_governance.domain.value_objects.unit_types import UnitType


@runtime_checkable
class GovernanceAPI(Protocol):
    """Main API offered by the governance engine."""

    def declare_scheme(self, device_id: DeviceId, scheme: PartitionScheme) -> DevicePartitionState:
        """Declare the partition scheme a device should run.

        Args:
            device_id: Target device.
            scheme: Desired scheme.

        Returns:
            The device's transition state after the declaration.

        Raises:
            ValidationError: If the device cannot host the scheme.
            TransitionError: If the device is FAILED.
            DeviceUnavailable: If the device is unknown.
        """
        ...

    def clear_fault(self, device_id: DeviceId, scheme: Optional[PartitionScheme] = None) -> DevicePartitionState:
        """Return a FAILED device to service."""
        ...

    def list_device_states(self) -> list[DevicePartitionState]:
        ...

    def list_units(
        self,
        device_id: Optional[DeviceId] = None,
        unit_type: Optional[UnitType] = None,
    ) -> list[AllocatableUnit]:
        """List allocatable units, optionally filtered."""
        ...

    def validate_profile(self, profile: HardwareProfile) -> ProfileValidation:
        ...

    def declare_profile(self, profile: HardwareProfile) -> HardwareProfile:
        """Create or update a hardware profile.

        Raises:
            ValidationError: If the profile breaks an invariant.
        """
        ...

    def delete_profile(self, identifier: ProfileId) -> bool:
        ...

    def declare_quota(self, quota: Quota) -> Quota:
        ...

    def delete_quota(self, team: TeamId) -> bool:
        ...

    def submit(self, request: WorkloadRequest) -> AdmissionDecision:
        """Submit a workload request.

        Returns:
            ADMITTED with units, QUEUED with a position, or REJECTED with
            the reason and error kind.
        """
        ...

    def cancel(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        """Cancel a queued or admitted request.

        Returns:
            The request, or None if not found.
        """
        ...

    def complete(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        ...

    def get_request(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        ...

    def get_stats(self) -> dict:
        """Get engine-wide statistics.

        Returns:
            Dictionary with unit counts, device phases, queue depth, etc.
        """
        ...
