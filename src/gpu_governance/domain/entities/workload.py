"""Workload request entities and admission outcomes.

A WorkloadRequest asks for N units of one profile on behalf of a team.
Its lifecycle is PENDING -> ADMITTED | QUEUED | REJECTED, ending in
COMPLETED, CANCELLED or REJECTED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from gpu_governance.domain.value_objects.identifiers import ProfileId, RequestId, TeamId, UnitId

if TYPE_CHECKING:
    from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
    from gpu_governance.domain.entities.profile import HardwareProfile


class RequestState(Enum):
    """Workload request lifecycle state."""
    PENDING = "pending"         # Submitted, not yet decided
    QUEUED = "queued"           # Waiting for quota or capacity
    ADMITTED = "admitted"       # Units reserved
    REJECTED = "rejected"       # Invalid or timed out
    COMPLETED = "completed"     # Workload finished, units released
    CANCELLED = "cancelled"     # Caller cancelled

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.REJECTED, RequestState.COMPLETED, RequestState.CANCELLED)


class AdmissionOutcome(Enum):
    ADMITTED = "admitted"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass
class WorkloadRequest:
    """Request for units of one profile."""
    request_id: RequestId
    team: TeamId
    profile_id: ProfileId
    count: Optional[int] = None          # Defaults to the profile's default_count
    priority: int = 0                    # Higher is served first
    memory_mb: Optional[int] = None      # Per unit, defaults to the profile ceiling
    timeout_seconds: Optional[float] = None
    state: RequestState = RequestState.PENDING

    # Filled in by admission
    profile: Optional[HardwareProfile] = None   # Snapshot taken at submission
    arrival_seq: int = 0
    submitted_at: float = 0.0
    deadline: Optional[float] = None
    admitted_at: Optional[float] = None
    finished_at: Optional[float] = None
    unit_ids: list[UnitId] = field(default_factory=list)
    borrowed: bool = False
    preemption_count: int = 0
    rejection_reason: str = ""
    error_kind: str = ""

    @property
    def requested_count(self) -> int:
        if self.count is not None:
            return self.count
        if self.profile is not None:
            return self.profile.default_count
        return 1

    @property
    def memory_per_unit_mb(self) -> int:
        if self.memory_mb is not None:
            return self.memory_mb
        if self.profile is not None:
            return self.profile.memory_limit_mb
        return 0

    @property
    def wait_seconds(self) -> float:
        """Time spent between submission and admission."""
        if self.admitted_at is None:
            return 0.0
        return self.admitted_at - self.submitted_at


@dataclass
class AdmissionDecision:
    """Result of submitting or re-evaluating a request."""
    request_id: RequestId
    outcome: AdmissionOutcome
    units: list[AllocatableUnit] = field(default_factory=list)
    position: Optional[int] = None       # 1-based queue position when QUEUED
    reason: str = ""
    error: str = ""                      # Error class name when REJECTED

    @property
    def admitted(self) -> bool:
        return self.outcome == AdmissionOutcome.ADMITTED
