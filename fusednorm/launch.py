import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_GROUP_SIZE = 32
_GROUPS_PER_UNIT = 4
_MAX_UNITS = 65535  # grid y-dimension limit
_PARTITIONS = 16
_PART_GROUPS = 4
_MERGE_GROUPS = 8


def _is_pow2(n):
    return n > 0 and (n & (n - 1)) == 0


@dataclass(frozen=True)
class LaunchConfig:
    """Unit and group geometry handed to the kernels by the host.

    group_size lanes exchange values directly; groups_per_unit groups share a
    scratch arena and cooperate on one row. Rows beyond max_units are handled
    by grid-striding. The parameter-gradient reduction splits rows into
    `partitions` slices, reduced by units of part_groups groups, and merges them
    with units of merge_groups groups.
    """

    group_size: int = _GROUP_SIZE
    groups_per_unit: int = _GROUPS_PER_UNIT
    max_units: int = _MAX_UNITS
    partitions: int = _PARTITIONS
    part_groups: int = _PART_GROUPS
    merge_groups: int = _MERGE_GROUPS
    vector_loads: bool = True

    def __post_init__(self):
        for field in ("group_size", "groups_per_unit", "part_groups", "merge_groups"):
            value = getattr(self, field)
            if not _is_pow2(value):
                raise ValueError(f"{field} must be a power of two, got {value}")
        if self.max_units < 1:
            raise ValueError(f"max_units must be positive, got {self.max_units}")
        if self.partitions < 1:
            raise ValueError(f"partitions must be positive, got {self.partitions}")
        if self.partitions % self.merge_groups != 0:
            raise ValueError(
                f"partitions ({self.partitions}) must be a multiple of "
                f"merge_groups ({self.merge_groups})"
            )
        if self.part_groups < 2 or self.group_size % self.part_groups != 0:
            raise ValueError(
                f"part_groups ({self.part_groups}) must be >= 2 and divide "
                f"group_size ({self.group_size})"
            )

    @property
    def lanes_per_unit(self):
        return self.group_size * self.groups_per_unit

    def units_for(self, n1):
        # At least one unit so an empty launch still has a valid geometry.
        units = max(1, min(int(n1), self.max_units))
        logger.debug(
            "launch: %d rows over %d units of %dx%d lanes",
            n1,
            units,
            self.groups_per_unit,
            self.group_size,
        )
        return units


DEFAULT_LAUNCH = LaunchConfig()

__all__ = ["DEFAULT_LAUNCH", "LaunchConfig"]
