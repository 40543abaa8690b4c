"""FastAPI REST adapter for the governance engine.

Provides HTTP endpoints for partition schemes, hardware profiles, quotas,
workload admission and status.

Usage:
    from gpu_governance.adapters.inbound.rest_api import create_app

    app = create_app(engine)
    # Run with: uvicorn module:app --host 0.0.0.0 --port 8080

Error mapping:
    ValidationError -> 422, TransitionError / StoreConflictError -> 409,
    DeviceUnavailable and missing entities -> 404, engine not running -> 503
"""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from gpu_governance import __version__
from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.partition import DevicePartitionState, PartitionMode, PartitionScheme
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import AdmissionDecision, WorkloadRequest
from gpu_governance.domain.errors import (
    DeviceUnavailable,
    EngineNotRunning,
    StoreConflictError,
    TransitionError,
    ValidationError,
)
from gpu_governance.domain.value_objects.identifiers import DeviceId, ProfileId, RequestId, TeamId
from gpu_governance.domain.value_objects.unit_types import parse_unit_type


# Pydantic models for request/response serialization

class SchemeModel(BaseModel):
    """Partition scheme declaration."""

    mode: Literal["unpartitioned", "time_sliced", "mig"]
    replicas: int = Field(default=1, ge=1, description="Time-sliced replicas")
    slices: list[str] = Field(default_factory=list, description="MIG slice profiles, e.g. 1g.5gb")

    def to_scheme(self) -> PartitionScheme:
        return PartitionScheme(PartitionMode(self.mode), replicas=self.replicas, slices=tuple(self.slices))


class DeviceStateResponse(BaseModel):
    """Device and its transition state."""

    device_id: str
    phase: str
    current: dict
    target: Optional[dict]
    pending: Optional[dict]
    generation: int
    failure_reason: str
    sync_error: str = ""
    health: Optional[str] = None
    total_memory_mb: Optional[int] = None


class UnitResponse(BaseModel):
    unit_id: str
    unit_type: str
    device_id: str
    generation: int
    memory_share_mb: int
    in_use: bool
    holder: Optional[str]
    available: bool


class ProfileModel(BaseModel):
    """Hardware profile declaration."""

    identifier: str = Field(..., min_length=1, description="gpu, shared-gpu or mig-<slice>")
    memory_limit_mb: int
    default_count: int = 1
    min_count: int = 1
    max_count: int = 1
    compute_limit_percent: int = 100
    display_name: str = ""
    queue: Optional[str] = None

    def to_profile(self) -> HardwareProfile:
        return HardwareProfile(
            identifier=ProfileId(self.identifier),
            memory_limit_mb=self.memory_limit_mb,
            default_count=self.default_count,
            min_count=self.min_count,
            max_count=self.max_count,
            compute_limit_percent=self.compute_limit_percent,
            display_name=self.display_name,
            queue=TeamId(self.queue) if self.queue else None,
        )


class QuotaModel(BaseModel):
    """Team quota declaration."""

    team: str = Field(..., min_length=1)
    nominal_units: int
    borrowing_limit: int = 0
    priority_weight: float = 1.0


class SubmitRequest(BaseModel):
    """Workload submission."""

    team: str = Field(..., min_length=1)
    profile: str = Field(..., min_length=1)
    count: Optional[int] = None
    priority: int = 0
    memory_mb: Optional[int] = None
    timeout_seconds: Optional[float] = None
    request_id: Optional[str] = None


class DecisionResponse(BaseModel):
    request_id: str
    outcome: str
    units: list[str]
    position: Optional[int]
    reason: str
    error: str


class RequestStatusResponse(BaseModel):
    request_id: str
    team: str
    profile: str
    count: int
    priority: int
    state: str
    unit_ids: list[str]
    borrowed: bool
    queue_position: Optional[int]
    blocked_reason: str
    rejection_reason: str
    error_kind: str
    submitted_at: float
    admitted_at: Optional[float]
    finished_at: Optional[float]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    initialized: bool
    devices: int
    queue_depth: int


def _state_response(engine, state: DevicePartitionState) -> DeviceStateResponse:
    device = engine.partitions.get_device(state.device_id)
    return DeviceStateResponse(
        device_id=state.device_id,
        phase=state.phase.value,
        current=state.current.to_dict(),
        target=state.target.to_dict() if state.target else None,
        pending=state.pending.to_dict() if state.pending else None,
        generation=state.generation,
        failure_reason=state.failure_reason,
        sync_error=state.sync_error,
        health=device.health.value if device else None,
        total_memory_mb=device.total_memory_mb if device else None,
    )


def _unit_response(unit: AllocatableUnit) -> UnitResponse:
    return UnitResponse(
        unit_id=unit.unit_id,
        unit_type=unit.unit_type.identifier,
        device_id=unit.device_id,
        generation=unit.generation,
        memory_share_mb=unit.memory_share_mb,
        in_use=unit.in_use,
        holder=unit.holder,
        available=unit.available,
    )


def _decision_response(decision: AdmissionDecision) -> DecisionResponse:
    return DecisionResponse(
        request_id=decision.request_id,
        outcome=decision.outcome.value,
        units=[u.unit_id for u in decision.units],
        position=decision.position,
        reason=decision.reason,
        error=decision.error,
    )


def _request_response(engine, request: WorkloadRequest) -> RequestStatusResponse:
    return RequestStatusResponse(
        request_id=request.request_id,
        team=request.team,
        profile=request.profile_id,
        count=request.requested_count,
        priority=request.priority,
        state=request.state.value,
        unit_ids=list(request.unit_ids),
        borrowed=request.borrowed,
        queue_position=engine.queue_position(request.request_id),
        blocked_reason=engine.blocked_reason(request.request_id),
        rejection_reason=request.rejection_reason,
        error_kind=request.error_kind,
        submitted_at=request.submitted_at,
        admitted_at=request.admitted_at,
        finished_at=request.finished_at,
    )


def create_app(engine) -> FastAPI:
    """Create FastAPI application with governance endpoints.

    Args:
        engine: GovernanceEngine instance.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="GPU Governance API",
        description="Quota-governed sharing of a fixed GPU pool",
        version=__version__,
    )

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": exc.reason, "reasons": exc.reasons},
        )

    @app.exception_handler(TransitionError)
    async def transition_error(request: Request, exc: TransitionError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(StoreConflictError)
    async def store_conflict(request: Request, exc: StoreConflictError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(DeviceUnavailable)
    async def device_unavailable(request: Request, exc: DeviceUnavailable):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(EngineNotRunning)
    async def not_running(request: Request, exc: EngineNotRunning):
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    # System

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Check engine health status."""
        stats = engine.get_stats()
        return HealthResponse(
            status="healthy" if engine.initialized else "initializing",
            initialized=engine.initialized,
            devices=stats["devices"],
            queue_depth=stats["admission"]["queue_depth"],
        )

    @app.get("/stats", response_model=dict, tags=["System"])
    async def get_stats():
        """Get engine-wide statistics."""
        return engine.get_stats()

    @app.get("/metrics", response_class=PlainTextResponse, tags=["System"])
    async def get_metrics():
        """Prometheus metrics in text format."""
        if engine.metrics is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
        return engine.metrics.export_metrics()

    # Devices and units

    @app.get("/devices", response_model=list[DeviceStateResponse], tags=["Devices"])
    async def list_devices():
        return [_state_response(engine, s) for s in engine.list_device_states()]

    @app.put("/devices/{device_id:path}/scheme", response_model=DeviceStateResponse, tags=["Devices"])
    async def declare_scheme(device_id: str, scheme: SchemeModel):
        """Declare the partition scheme of a device."""
        state = engine.declare_scheme(DeviceId(device_id), scheme.to_scheme())
        return _state_response(engine, state)

    @app.post("/devices/{device_id:path}/clear-fault", response_model=DeviceStateResponse, tags=["Devices"])
    async def clear_fault(device_id: str, scheme: Optional[SchemeModel] = None):
        """Return a FAILED device to service."""
        state = engine.clear_fault(DeviceId(device_id), scheme.to_scheme() if scheme else None)
        return _state_response(engine, state)

    @app.get("/devices/{device_id:path}", response_model=DeviceStateResponse, tags=["Devices"])
    async def get_device(device_id: str):
        state = engine.get_device_state(DeviceId(device_id))
        if state is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Device {device_id} not found")
        return _state_response(engine, state)

    @app.get("/units", response_model=list[UnitResponse], tags=["Devices"])
    async def list_units(device_id: Optional[str] = None, unit_type: Optional[str] = None):
        """List allocatable units, optionally by device or unit type."""
        parsed = None
        if unit_type is not None:
            parsed = parse_unit_type(unit_type)
            if parsed is None:
                raise ValidationError(f"Unknown unit type {unit_type!r}")
        units = engine.list_units(DeviceId(device_id) if device_id else None, parsed)
        return [_unit_response(u) for u in units]

    # Profiles

    @app.post("/profiles/validate", response_model=dict, tags=["Profiles"])
    async def validate_profile(profile: ProfileModel):
        result = engine.validate_profile(profile.to_profile())
        return {"ok": result.ok, "reasons": result.reasons}

    @app.put("/profiles", response_model=dict, tags=["Profiles"])
    async def declare_profile(profile: ProfileModel):
        """Create or update a hardware profile."""
        stored = engine.declare_profile(profile.to_profile())
        return {**stored.to_dict(), "version": stored.version}

    @app.get("/profiles", response_model=list[dict], tags=["Profiles"])
    async def list_profiles():
        return [{**p.to_dict(), "version": p.version} for p in engine.list_profiles()]

    @app.delete("/profiles/{identifier}", response_model=dict, tags=["Profiles"])
    async def delete_profile(identifier: str):
        if not engine.delete_profile(ProfileId(identifier)):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Profile {identifier} not found")
        return {"identifier": identifier, "status": "deleted"}

    # Quotas

    @app.put("/quotas", response_model=dict, tags=["Quotas"])
    async def declare_quota(quota: QuotaModel):
        stored = engine.declare_quota(Quota(
            team=TeamId(quota.team),
            nominal_units=quota.nominal_units,
            borrowing_limit=quota.borrowing_limit,
            priority_weight=quota.priority_weight,
        ))
        return {**stored.to_dict(), "version": stored.version}

    @app.get("/quotas", response_model=list[dict], tags=["Quotas"])
    async def list_quotas():
        return [{**q.to_dict(), "version": q.version} for q in engine.list_quotas()]

    @app.delete("/quotas/{team}", response_model=dict, tags=["Quotas"])
    async def delete_quota(team: str):
        if not engine.delete_quota(TeamId(team)):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Quota of {team} not found")
        return {"team": team, "status": "deleted"}

    # Workloads

    @app.post("/requests", response_model=DecisionResponse, status_code=status.HTTP_201_CREATED, tags=["Workloads"])
    async def submit_request(body: SubmitRequest):
        """Submit a workload request for admission."""
        decision = engine.submit(WorkloadRequest(
            request_id=RequestId(body.request_id or ""),
            team=TeamId(body.team),
            profile_id=ProfileId(body.profile),
            count=body.count,
            priority=body.priority,
            memory_mb=body.memory_mb,
            timeout_seconds=body.timeout_seconds,
        ))
        return _decision_response(decision)

    @app.get("/requests/{request_id}", response_model=RequestStatusResponse, tags=["Workloads"])
    async def get_request(request_id: str):
        request = engine.get_request(RequestId(request_id))
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Request {request_id} not found")
        return _request_response(engine, request)

    @app.delete("/requests/{request_id}", response_model=RequestStatusResponse, tags=["Workloads"])
    async def cancel_request(request_id: str):
        """Cancel a queued or admitted request."""
        request = engine.cancel(RequestId(request_id))
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Request {request_id} not found")
        return _request_response(engine, request)

    @app.post("/requests/{request_id}/complete", response_model=RequestStatusResponse, tags=["Workloads"])
    async def complete_request(request_id: str):
        """Mark an admitted request finished and release its units."""
        request = engine.complete(RequestId(request_id))
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Request {request_id} not found")
        return _request_response(engine, request)

    return app


def run_server(engine, host: str = "0.0.0.0", port: int = 8080) -> None:
    """Serve the REST API with uvicorn until interrupted."""
    import uvicorn

    app = create_app(engine)
    uvicorn.run(app, host=host, port=port)
