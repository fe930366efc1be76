"""Instance and disk type selection.

Economy and business tiers pick the smallest catalog type that covers
the requested CPU count and memory; economy never goes above t2.large.
The customized tier takes the caller's type name, validated against the
types actually offered in the target region.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from internal.aws.clients import paginate
from internal.models.types import GIB, DiskType, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstanceType:
    name: str
    cpus: int
    memory_gib: int

    @property
    def memory_bytes(self) -> int:
        return self.memory_gib * GIB

    def fits(self, cpus: int, memory_bytes: int) -> bool:
        return self.cpus >= cpus and self.memory_bytes >= memory_bytes


# Ordered smallest to largest
CATALOG = (
    InstanceType("t2.micro", 1, 1),
    InstanceType("t2.small", 1, 2),
    InstanceType("t2.medium", 2, 4),
    InstanceType("t2.large", 2, 8),
    InstanceType("m5.large", 2, 8),
    InstanceType("m5.xlarge", 4, 16),
    InstanceType("m5.2xlarge", 8, 32),
    InstanceType("m5.4xlarge", 16, 64),
    InstanceType("m5.8xlarge", 32, 128),
    InstanceType("m5.12xlarge", 48, 192),
    InstanceType("m5.16xlarge", 64, 256),
    InstanceType("m5.24xlarge", 96, 384),
)

ECONOMY_CEILING = "t2.large"

_ECONOMY = CATALOG[: [t.name for t in CATALOG].index(ECONOMY_CEILING) + 1]

DISK_TYPES = {
    Tier.ECONOMY: DiskType.STANDARD,
    Tier.BUSINESS: DiskType.SSD,
    Tier.CUSTOMIZED: DiskType.PROVISIONED_SSD,
}


def select_instance_type(tier: Tier, cpus: int, memory_bytes: int,
                         custom_type: Optional[str] = None) -> str:
    if tier == Tier.CUSTOMIZED:
        if not custom_type:
            raise ValueError("customized tier requires an instance type name")
        return custom_type

    candidates = _ECONOMY if tier == Tier.ECONOMY else CATALOG
    for instance_type in candidates:
        if instance_type.fits(cpus, memory_bytes):
            return instance_type.name
    return candidates[-1].name


def select_disk_type(tier: Tier) -> DiskType:
    return DISK_TYPES[tier]


class InstanceTypeCache:
    """Per-region set of offered instance types, listed once per region.

    Concurrent first loads for a region may race; the last result stored
    wins, and all of them hold the same listing.
    """

    def __init__(self):
        self._types: dict[str, frozenset] = {}
        self._lock = threading.Lock()

    def get(self, region: str, loader: Callable[[], Iterable[str]]) -> frozenset:
        with self._lock:
            types = self._types.get(region)
        if types is None:
            types = frozenset(loader())
            with self._lock:
                self._types[region] = types
            logger.info("Cached %d instance types for %s", len(types), region)
        return types

    def clear(self):
        with self._lock:
            self._types.clear()


instance_type_cache = InstanceTypeCache()


def map_type(ec2, region: str, requested: str, fallback: str,
             cache: Optional[InstanceTypeCache] = None) -> str:
    """Return ``requested`` if offered in ``region``, otherwise ``fallback``."""
    if cache is None:
        cache = instance_type_cache

    def load():
        return [t["InstanceType"] for t in paginate(ec2, "describe_instance_types", "InstanceTypes")]

    if requested in cache.get(region, load):
        return requested
    logger.info("Instance type %s is not offered in %s, using %s", requested, region, fallback)
    return fallback
