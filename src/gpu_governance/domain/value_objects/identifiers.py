"""Type-safe identifiers for devices, units, profiles, teams and requests.

These value objects provide type safety for governance identifiers
using Python's NewType for zero-runtime overhead.
"""

from __future__ import annotations

from typing import NewType

# Cluster node name as reported by the orchestrator (e.g., "node-a")
NodeName = NewType("NodeName", str)

# Physical GPU, unique across the cluster (e.g., "node-a/GPU-0")
DeviceId = NewType("DeviceId", str)

# Allocatable unit derived from a device under one scheme generation
UnitId = NewType("UnitId", str)

# User-facing hardware profile identifier (e.g., "shared-gpu", "mig-1g.5gb")
ProfileId = NewType("ProfileId", str)

# Team / namespace owning a quota
TeamId = NewType("TeamId", str)

# Workload request identifier
RequestId = NewType("RequestId", str)


def create_device_id(node: str, index: int) -> DeviceId:
    """Create a device identifier from its (node, index) pair."""
    return DeviceId(f"{node}/GPU-{index}")


def parse_device_id(device_id: DeviceId) -> tuple[NodeName, int]:
    """Split a device identifier back into (node, index).

    Raises:
        ValueError: If the identifier is not in ``<node>/GPU-<index>`` form.
    """
    node, sep, gpu = device_id.rpartition("/")
    if not sep or not gpu.startswith("GPU-"):
        raise ValueError(f"Malformed device id: {device_id!r}")
    return NodeName(node), int(gpu[len("GPU-"):])


def create_unit_id(device_id: DeviceId, generation: int, tag: str, ordinal: int) -> UnitId:
    """Create a unit identifier scoped to a device's scheme generation."""
    return UnitId(f"{device_id}/g{generation}/{tag}-{ordinal}")


def create_request_id(team: str, counter: int) -> RequestId:
    """Create a request identifier from team and counter."""
    return RequestId(f"{team}-{counter:08d}")
