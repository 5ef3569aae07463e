"""Data structures shared by the VRF management modules.

These light-weight dataclasses describe the kernel objects we manage (policy
rules and routes) in a typed form so the verification logic compares records
instead of grepping command output.  Both the netlink gateway and the
``ip rule`` text parser produce the same records.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


DEFAULT_VRF = "default"

RT_TABLE_LOCAL = 255
RT_TABLE_MAIN = 254
RT_TABLE_DEFAULT = 253

RESERVED_TABLES = {
    "local": RT_TABLE_LOCAL,
    "main": RT_TABLE_MAIN,
    "default": RT_TABLE_DEFAULT,
}


class AddressFamily(Enum):
    """Address families a VRF carries state for."""

    V4 = socket.AF_INET
    V6 = socket.AF_INET6

    @property
    def label(self) -> str:
        return "ipv4" if self is AddressFamily.V4 else "ipv6"


class Direction(Enum):
    """Selector direction of a per-VRF policy rule."""

    OIF = "oif"
    IIF = "iif"


class Capability(Enum):
    """How the kernel steers lookups into VRF tables.

    ``CONSOLIDATED`` kernels carry a single ``l3mdev`` rule per family that
    resolves the table per packet; ``LEGACY`` kernels need an oif/iif rule
    pair per VRF and family.
    """

    CONSOLIDATED = "consolidated"
    LEGACY = "legacy"


@dataclass(frozen=True)
class FibRule:
    """A single policy routing rule as reported by the kernel."""

    priority: int
    family: AddressFamily
    iif: Optional[str] = None
    oif: Optional[str] = None
    table: Optional[int] = None
    table_name: Optional[str] = None
    l3mdev: bool = False
    detached: bool = False
    action: str = "lookup"

    def selector(self, direction: Direction) -> Optional[str]:
        return self.oif if direction is Direction.OIF else self.iif

    @property
    def is_local_lookup(self) -> bool:
        """True for the plain ``from all lookup local`` rule."""

        return (
            self.action == "lookup"
            and self.table == RT_TABLE_LOCAL
            and self.iif is None
            and self.oif is None
            and not self.l3mdev
        )


@dataclass(frozen=True)
class Route:
    """A route entry in a specific table."""

    family: AddressFamily
    table: int
    dst: str = "default"
    kind: str = "unicast"
    metric: Optional[int] = None

    @property
    def is_unreachable_default(self) -> bool:
        return self.dst == "default" and self.kind == "unreachable"


@dataclass(frozen=True)
class VrfSettings:
    """Knobs shared by the lifecycle, verification and cgroup modules."""

    tbid_min: int = 1001
    tbid_max: int = 1255
    # Worse than any real default (IPv6 static defaults use 1024) so genuine
    # routes always win while lookups never fall through to the next table.
    default_route_metric: int = 8192
    rule_priority: int = 200
    cgroup_root: Path = Path("/sys/fs/cgroup/l3mdev")
    proc_root: Path = Path("/proc")
    cgroup_remove_attempts: int = 5
    cgroup_remove_delay: float = 1.0
    lock_dir: Optional[Path] = Path("/run/vrfctl")
    manage_services: bool = True
