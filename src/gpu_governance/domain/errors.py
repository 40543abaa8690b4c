"""Error taxonomy for the governance engine.

- ValidationError: malformed profile, quota, scheme or request. Rejected
  immediately, surfaced to the submitter, never retried.
- CapacityError: transient shortfall. Becomes queue state, never dropped.
- AdmissionOverloadError: the queue is at its bound. The submission is
  rejected so the caller can back off; nothing already queued is dropped.
- TransitionError: drain timeout or reconfiguration mismatch. The device
  enters FAILED and waits for an operator.
- DeviceUnavailable: device unreachable. Its units are withdrawn.
- AccountingError: a reservation broke an isolated unit's fixed share.
  This is a programming error, not a runtime rejection.
- EngineNotRunning: a call arrived before initialize() or after shutdown().
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for governance engine errors."""
    pass


class ValidationError(GovernanceError):
    """Structurally invalid declaration or request."""

    def __init__(self, reason: str, reasons: list[str] | None = None) -> None:
        self.reason = reason
        self.reasons = reasons or [reason]
        super().__init__(reason)


class CapacityError(GovernanceError):
    """Not enough capacity right now."""
    pass


class AdmissionOverloadError(GovernanceError):
    """Admission queue is at its configured bound."""
    pass


class TransitionError(GovernanceError):
    """Partition scheme transition could not proceed."""
    pass


class DeviceUnavailable(GovernanceError):
    """Device is unreachable or unknown."""
    pass


class AccountingError(GovernanceError):
    """Reservation ledger invariant violated."""
    pass


class StoreConflictError(GovernanceError):
    """Optimistic concurrency check failed on the object store."""
    pass


class EngineNotRunning(GovernanceError):
    """Engine is not initialized yet or is shutting down."""
    pass
