"""Hardware profile registry.

Validates and stores user-facing profiles, and resolves profile
identifiers to the unit types the inventory produces. Profiles are
stored as immutable snapshots: an update only affects admissions decided
after it, never requests already admitted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.errors import ValidationError
from gpu_governance.domain.value_objects.identifiers import ProfileId
from gpu_governance.domain.value_objects.mig_profiles import lookup_slice
from gpu_governance.domain.value_objects.unit_types import UnitKind, UnitType, parse_unit_type

logger = logging.getLogger(__name__)


@dataclass
class ProfileValidation:
    """Outcome of validating a profile."""
    ok: bool
    reasons: list[str] = field(default_factory=list)


class HardwareProfileRegistry:
    """Stores validated profiles keyed by identifier."""

    def __init__(self, share_lookup: Optional[Callable[[UnitType], Optional[int]]] = None) -> None:
        """Initialize the registry.

        Args:
            share_lookup: Returns the smallest per-unit memory share the
                inventory currently produces for a unit type, or None when
                no such unit exists yet.
        """
        self._share_lookup = share_lookup
        self._profiles: dict[ProfileId, HardwareProfile] = {}
        self._lock = threading.Lock()

    def validate(self, profile: HardwareProfile) -> ProfileValidation:
        """Check a profile against structural and inventory invariants."""
        reasons = profile.structural_problems()
        unit_type = profile.unit_type
        if unit_type is not None:
            share = self._unit_share(unit_type)
            if share is not None and profile.memory_limit_mb > share:
                reasons.append(
                    f"memory_limit_mb {profile.memory_limit_mb} exceeds the {share} MB "
                    f"per-unit share of {unit_type}"
                )
        return ProfileValidation(ok=not reasons, reasons=reasons)

    def _unit_share(self, unit_type: UnitType) -> Optional[int]:
        share = self._share_lookup(unit_type) if self._share_lookup else None
        if share is None and unit_type.kind is UnitKind.ISOLATED_SLICE:
            slice_profile = lookup_slice(unit_type.slice_profile)
            share = slice_profile.memory_mb if slice_profile else None
        return share

    def register(self, profile: HardwareProfile) -> HardwareProfile:
        """Add a new profile.

        Raises:
            ValidationError: If invalid or the identifier is taken.
        """
        with self._lock:
            if profile.identifier in self._profiles:
                raise ValidationError(f"Profile {profile.identifier!r} already registered")
            return self._store(profile, version=1)

    def update(self, profile: HardwareProfile) -> HardwareProfile:
        """Replace an existing profile.

        Raises:
            ValidationError: If invalid or unknown.
        """
        with self._lock:
            current = self._profiles.get(profile.identifier)
            if current is None:
                raise ValidationError(f"Profile {profile.identifier!r} is not registered")
            return self._store(profile, version=current.version + 1)

    def apply(self, profile: HardwareProfile) -> HardwareProfile:
        """Create or update a profile (declarative upsert)."""
        with self._lock:
            current = self._profiles.get(profile.identifier)
            return self._store(profile, version=current.version + 1 if current else 1)

    def _store(self, profile: HardwareProfile, version: int) -> HardwareProfile:
        result = self.validate(profile)
        if not result.ok:
            raise ValidationError("; ".join(result.reasons), result.reasons)
        stored = replace(profile, version=version)
        self._profiles[stored.identifier] = stored
        logger.info(f"Profile {stored.identifier} stored (version {version})")
        return stored

    def load(self, profile: HardwareProfile) -> None:
        """Install a persisted profile without inventory checks."""
        problems = profile.structural_problems()
        if problems:
            raise ValidationError("; ".join(problems), problems)
        with self._lock:
            self._profiles[profile.identifier] = profile

    def delete(self, identifier: ProfileId) -> bool:
        with self._lock:
            return self._profiles.pop(identifier, None) is not None

    def get(self, identifier: ProfileId) -> Optional[HardwareProfile]:
        return self._profiles.get(identifier)

    def profiles(self) -> list[HardwareProfile]:
        return sorted(self._profiles.values(), key=lambda p: p.identifier)

    def resolve(self, identifier: ProfileId) -> UnitType:
        """Resolve a registered profile to its unit type.

        Raises:
            ValidationError: If the profile is unknown.
        """
        profile = self._profiles.get(identifier)
        unit_type = parse_unit_type(identifier) if profile else None
        if unit_type is None:
            raise ValidationError(f"Unknown profile {identifier!r}")
        return unit_type
