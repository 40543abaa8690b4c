"""Domain value objects for GPU allocation governance.

Value objects are immutable objects without identity that represent
core concepts like device and unit IDs, unit types and MIG slice shapes.
"""

from gpu_governance.domain.value_objects.admission_policy import AdmissionPolicy
from gpu_governance.domain.value_objects.identifiers import (
    DeviceId,
    NodeName,
    ProfileId,
    RequestId,
    TeamId,
    UnitId,
    create_device_id,
    create_request_id,
    create_unit_id,
    parse_device_id,
)
from gpu_governance.domain.value_objects.mig_profiles import (
    MigLayoutError,
    MigSliceProfile,
    SlicePlacement,
    family_for_memory,
    lookup_slice,
    place_slices,
)
from gpu_governance.domain.value_objects.unit_types import (
    SHARED_SLOT,
    WHOLE_DEVICE,
    UnitKind,
    UnitType,
    mig_unit_type,
    parse_unit_type,
)

__all__ = [
    # Identifiers
    "DeviceId",
    "NodeName",
    "ProfileId",
    "RequestId",
    "TeamId",
    "UnitId",
    "create_device_id",
    "create_request_id",
    "create_unit_id",
    "parse_device_id",
    # MIG
    "MigLayoutError",
    "MigSliceProfile",
    "SlicePlacement",
    "family_for_memory",
    "lookup_slice",
    "place_slices",
    # Unit types
    "UnitKind",
    "UnitType",
    "WHOLE_DEVICE",
    "SHARED_SLOT",
    "mig_unit_type",
    "parse_unit_type",
    # Policy
    "AdmissionPolicy",
]
