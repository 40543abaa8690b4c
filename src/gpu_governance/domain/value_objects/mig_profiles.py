"""MIG slice profiles and physical placement rules.

A MIG-capable GPU exposes 7 compute slices and 8 memory slices. Each slice
profile consumes a fixed number of both and may only start at specific
memory-slice offsets. Placing a declared slice list means assigning every
slice a contiguous memory range such that no two ranges overlap.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

COMPUTE_SLICES_PER_GPU = 7
MEMORY_SLICES_PER_GPU = 8

# Relative distance between a device's reported memory and a family's nominal size
FAMILY_TOLERANCE = 0.10


@dataclass(frozen=True)
class MigSliceProfile:
    """One hardware-isolated slice shape."""
    name: str                     # e.g., "1g.5gb"
    compute_slices: int
    memory_slices: int
    memory_mb: int
    allowed_starts: tuple[int, ...]


@dataclass(frozen=True)
class SlicePlacement:
    """Physical memory-slice range occupied by one slice."""
    profile: str
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size

    def overlaps(self, other: SlicePlacement) -> bool:
        return self.start < other.end and other.start < self.end


def _catalog(*profiles: MigSliceProfile) -> dict[str, MigSliceProfile]:
    return {p.name: p for p in profiles}


# Nominal device memory (MB) -> slice profiles available on that family
MIG_FAMILIES: dict[int, dict[str, MigSliceProfile]] = {
    40960: _catalog(
        MigSliceProfile("1g.5gb", 1, 1, 4864, (0, 1, 2, 3, 4, 5, 6)),
        MigSliceProfile("2g.10gb", 2, 2, 9856, (0, 2, 4)),
        MigSliceProfile("3g.20gb", 3, 4, 19968, (0, 4)),
        MigSliceProfile("4g.20gb", 4, 4, 19968, (0,)),
        MigSliceProfile("7g.40gb", 7, 8, 40192, (0,)),
    ),
    81920: _catalog(
        MigSliceProfile("1g.10gb", 1, 1, 9728, (0, 1, 2, 3, 4, 5, 6)),
        MigSliceProfile("1g.20gb", 1, 2, 19968, (0, 2, 4, 6)),
        MigSliceProfile("2g.20gb", 2, 2, 19968, (0, 2, 4)),
        MigSliceProfile("3g.40gb", 3, 4, 40192, (0, 4)),
        MigSliceProfile("4g.40gb", 4, 4, 40192, (0,)),
        MigSliceProfile("7g.80gb", 7, 8, 80384, (0,)),
    ),
}


class MigLayoutError(ValueError):
    """Declared slice list cannot be placed on the device."""
    pass


def family_for_memory(total_memory_mb: int) -> Optional[int]:
    """Return the MIG family matching a device's memory size, if any."""
    for nominal in MIG_FAMILIES:
        if abs(total_memory_mb - nominal) <= nominal * FAMILY_TOLERANCE:
            return nominal
    return None


def lookup_slice(name: str, family: Optional[int] = None) -> Optional[MigSliceProfile]:
    """Find a slice profile by name, optionally restricted to one family."""
    families = [family] if family is not None else list(MIG_FAMILIES)
    for nominal in families:
        profile = MIG_FAMILIES.get(nominal, {}).get(name)
        if profile is not None:
            return profile
    return None


def known_slice_names() -> set[str]:
    """All slice profile names across every family."""
    return {name for profiles in MIG_FAMILIES.values() for name in profiles}


def place_slices(slices: tuple[str, ...], family: int) -> list[SlicePlacement]:
    """Assign non-overlapping memory ranges to the declared slices.

    Slices are tried largest first over their allowed start offsets,
    backtracking when a later slice finds no free range. The result is
    returned in declaration order.

    Args:
        slices: Slice profile names as declared.
        family: Nominal memory size of the device family.

    Returns:
        One placement per declared slice.

    Raises:
        MigLayoutError: On unknown slices, exhausted compute slices or
            when no non-overlapping placement exists.
    """
    catalog = MIG_FAMILIES.get(family)
    if catalog is None:
        raise MigLayoutError(f"No MIG family for {family} MB devices")
    if not slices:
        raise MigLayoutError("MIG scheme declares no slices")

    profiles = []
    for name in slices:
        profile = catalog.get(name)
        if profile is None:
            raise MigLayoutError(f"Slice profile {name!r} not available on {family} MB devices")
        profiles.append(profile)

    compute = sum(p.compute_slices for p in profiles)
    if compute > COMPUTE_SLICES_PER_GPU:
        raise MigLayoutError(
            f"Slices need {compute} compute slices, device has {COMPUTE_SLICES_PER_GPU}"
        )

    # Most constrained first: larger slices, then fewer legal offsets
    order = sorted(
        range(len(profiles)),
        key=lambda i: (-profiles[i].memory_slices, len(profiles[i].allowed_starts)),
    )
    placed: dict[int, SlicePlacement] = {}
    if not _place(order, 0, profiles, placed):
        names = ", ".join(slices)
        raise MigLayoutError(f"No non-overlapping placement exists for slices {names}")

    return [placed[i] for i in range(len(profiles))]


def _place(
    order: list[int],
    position: int,
    profiles: list[MigSliceProfile],
    placed: dict[int, SlicePlacement],
) -> bool:
    if position == len(order):
        return True
    i = order[position]
    profile = profiles[i]
    for start in profile.allowed_starts:
        candidate = SlicePlacement(profile.name, start, profile.memory_slices)
        if candidate.end > MEMORY_SLICES_PER_GPU:
            continue
        if any(candidate.overlaps(p) for p in placed.values()):
            continue
        placed[i] = candidate
        if _place(order, position + 1, profiles, placed):
            return True
        del placed[i]
    return False
