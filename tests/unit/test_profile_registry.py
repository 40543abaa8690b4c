"""Unit tests for the hardware profile registry."""

import pytest

from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.errors import ValidationError
from gpu_governance.domain.services.profile_registry import HardwareProfileRegistry
from gpu_governance.domain.value_objects.identifiers import ProfileId
from gpu_governance.domain.value_objects.unit_types import SHARED_SLOT, WHOLE_DEVICE, mig_unit_type

from factories import mig_profile, shared_profile


@pytest.fixture
def registry() -> HardwareProfileRegistry:
    shares = {SHARED_SLOT: 40960, WHOLE_DEVICE: 40960}
    return HardwareProfileRegistry(share_lookup=shares.get)


@pytest.mark.unit
class TestValidation:
    """Test profile validation against structure and inventory."""

    def test_valid_profile(self, registry):
        result = registry.validate(shared_profile(memory_limit_mb=8000))
        assert result.ok
        assert result.reasons == []

    def test_memory_above_unit_share(self, registry):
        result = registry.validate(shared_profile(memory_limit_mb=50000))
        assert not result.ok
        assert "per-unit share" in result.reasons[0]

    def test_mig_share_from_catalog_when_no_units_exist(self, registry):
        """Test MIG profiles are checked against the slice size before any device runs MIG."""
        assert registry.validate(mig_profile(memory_limit_mb=4864)).ok
        result = registry.validate(mig_profile(memory_limit_mb=4865))
        assert not result.ok

    def test_unknown_identifier(self, registry):
        result = registry.validate(HardwareProfile(identifier=ProfileId("tpu"), memory_limit_mb=100))
        assert not result.ok
        assert "Unknown profile identifier" in result.reasons[0]

    def test_all_reasons_are_reported(self, registry):
        profile = shared_profile(memory_limit_mb=50000, default_count=9, max_count=4)
        assert len(registry.validate(profile).reasons) == 2


@pytest.mark.unit
class TestStorage:
    """Test registering, updating and resolving profiles."""

    def test_register_and_get(self, registry):
        stored = registry.register(shared_profile())
        assert stored.version == 1
        assert registry.get(ProfileId("shared-gpu")) == stored

    def test_register_twice(self, registry):
        registry.register(shared_profile())
        with pytest.raises(ValidationError, match="already registered"):
            registry.register(shared_profile())

    def test_update_unknown(self, registry):
        with pytest.raises(ValidationError, match="not registered"):
            registry.update(shared_profile())

    def test_invalid_profile_is_not_stored(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.apply(shared_profile(memory_limit_mb=50000))
        assert exc_info.value.reasons
        assert registry.get(ProfileId("shared-gpu")) is None

    def test_apply_bumps_version(self, registry):
        registry.apply(shared_profile(memory_limit_mb=4000))
        updated = registry.apply(shared_profile(memory_limit_mb=6000))
        assert updated.version == 2
        assert registry.get(ProfileId("shared-gpu")).memory_limit_mb == 6000

    def test_updates_do_not_touch_earlier_snapshots(self, registry):
        """Test stored profiles are replaced, never mutated."""
        first = registry.apply(shared_profile(memory_limit_mb=4000))
        registry.apply(shared_profile(memory_limit_mb=6000))
        assert first.memory_limit_mb == 4000

    def test_resolve(self, registry):
        registry.apply(mig_profile())
        assert registry.resolve(ProfileId("mig-1g.5gb")) == mig_unit_type("1g.5gb")
        with pytest.raises(ValidationError, match="Unknown profile"):
            registry.resolve(ProfileId("shared-gpu"))

    def test_delete(self, registry):
        registry.apply(shared_profile())
        assert registry.delete(ProfileId("shared-gpu"))
        assert not registry.delete(ProfileId("shared-gpu"))
        assert registry.profiles() == []

    def test_load_skips_inventory_checks(self, registry):
        """Test persisted profiles load even if today's units are smaller."""
        registry.load(shared_profile(memory_limit_mb=50000))
        assert registry.get(ProfileId("shared-gpu")).memory_limit_mb == 50000
