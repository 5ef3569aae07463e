"""Kernel routing gateway.

Everything that touches links, policy rules and routes goes through
:class:`KernelGateway` so the lifecycle and verification code can be
exercised against an in-memory kernel in unit tests.  The production
implementation talks netlink through ``pyroute2``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional

from pyroute2 import IPRoute, NetlinkError

from .config import RESERVED_TABLES, AddressFamily, Direction, FibRule, Route
from .exceptions import NotFoundError, OperationalError

LOG = logging.getLogger(__name__)

# From /usr/include/linux/fib_rules.h
FIB_RULE_IIF_DETACHED = 0x00000008
FIB_RULE_OIF_DETACHED = 0x00000010
FR_ACT_TO_TBL = 1
FR_ACT_GOTO = 2
FR_ACT_NOP = 3
FR_ACT_BLACKHOLE = 6
FR_ACT_UNREACHABLE = 7
FR_ACT_PROHIBIT = 8

# From /usr/include/linux/rtnetlink.h
RTN_UNICAST = 1
RTN_BLACKHOLE = 6
RTN_UNREACHABLE = 7
RTN_PROHIBIT = 8

_RULE_ACTIONS = {
    FR_ACT_TO_TBL: "lookup",
    FR_ACT_GOTO: "goto",
    FR_ACT_NOP: "nop",
    FR_ACT_BLACKHOLE: "blackhole",
    FR_ACT_UNREACHABLE: "unreachable",
    FR_ACT_PROHIBIT: "prohibit",
}

_ROUTE_TYPES = {
    RTN_UNICAST: "unicast",
    RTN_BLACKHOLE: "blackhole",
    RTN_UNREACHABLE: "unreachable",
    RTN_PROHIBIT: "prohibit",
}

_TABLE_NAMES = {number: name for name, number in RESERVED_TABLES.items()}


class KernelGateway(ABC):
    """Narrow interface onto the kernel networking stack."""

    @abstractmethod
    def create_vrf_device(self, name: str, table_id: int) -> None:
        """Create VRF device ``name`` bound to ``table_id`` and bring it up."""

    @abstractmethod
    def delete_device(self, name: str) -> None:
        """Delete link ``name``."""

    @abstractmethod
    def device_exists(self, name: str) -> bool:
        """Return whether a link called ``name`` exists."""

    @abstractmethod
    def list_vrf_devices(self) -> List[str]:
        """Names of every VRF device."""

    @abstractmethod
    def list_slaves(self, vrf: str) -> List[str]:
        """Names of the devices enslaved to ``vrf``."""

    @abstractmethod
    def get_vrf_table(self, name: str) -> Optional[int]:
        """Table id of VRF device ``name`` or ``None``."""

    @abstractmethod
    def get_slave_table(self, device: str) -> Optional[int]:
        """Table id of the VRF ``device`` is enslaved to, or ``None``."""

    @abstractmethod
    def add_rule(
        self,
        direction: Direction,
        family: AddressFamily,
        selector: str,
        table: int,
        priority: int,
    ) -> None:
        """Install ``<direction> <selector> lookup <table>``."""

    @abstractmethod
    def delete_rule(self, direction: Direction, family: AddressFamily, selector: str) -> None:
        """Delete the first rule selecting on ``<direction> <selector>``."""

    @abstractmethod
    def add_route(self, table: int, family: AddressFamily, metric: int) -> None:
        """Install an unreachable default route in ``table``."""

    @abstractmethod
    def delete_route(self, table: int, family: AddressFamily, metric: int) -> None:
        """Delete the unreachable default route from ``table``."""

    @abstractmethod
    def dump_rules(self, family: AddressFamily) -> List[FibRule]:
        """All policy rules of ``family`` in kernel order."""

    @abstractmethod
    def dump_routes(self, table: int, family: AddressFamily) -> List[Route]:
        """All routes of ``family`` in ``table``."""


def rule_from_msg(msg: Any, family: AddressFamily) -> FibRule:
    """Decode a ``pyroute2`` fib rule message."""

    flags = msg.get("flags", 0) or 0
    table = msg.get_attr("FRA_TABLE") or msg.get("table") or None
    action = _RULE_ACTIONS.get(msg.get("action"), "unknown")
    return FibRule(
        priority=msg.get_attr("FRA_PRIORITY") or 0,
        family=family,
        iif=msg.get_attr("FRA_IIFNAME"),
        oif=msg.get_attr("FRA_OIFNAME"),
        table=table,
        table_name=_TABLE_NAMES.get(table) if table is not None else None,
        l3mdev=bool(msg.get_attr("FRA_L3MDEV")),
        detached=bool(flags & (FIB_RULE_IIF_DETACHED | FIB_RULE_OIF_DETACHED)),
        action=action,
    )


def route_from_msg(msg: Any, family: AddressFamily, table: int) -> Route:
    """Decode a ``pyroute2`` route message."""

    dst_len = msg.get("dst_len") or 0
    dst_text = "default" if dst_len == 0 else f"{msg.get_attr('RTA_DST')}/{dst_len}"
    return Route(
        family=family,
        table=msg.get_attr("RTA_TABLE") or msg.get("table") or table,
        dst=dst_text,
        kind=_ROUTE_TYPES.get(msg.get("type"), "other"),
        metric=msg.get_attr("RTA_PRIORITY"),
    )


class NetlinkGateway(KernelGateway):
    """:class:`KernelGateway` backed by ``pyroute2.IPRoute``."""

    def __init__(self, factory: Callable[[], Any] = IPRoute) -> None:
        self._factory = factory

    @contextmanager
    def _ipr(self, action: str) -> Iterator[Any]:
        try:
            with self._factory() as ipr:
                yield ipr
        except NetlinkError as exc:
            LOG.debug("netlink request failed while trying to %s: %s", action, exc)
            raise OperationalError(f"failed to {action}: {exc}") from exc

    @staticmethod
    def _index(ipr: Any, name: str) -> Optional[int]:
        indexes = ipr.link_lookup(ifname=name)
        return indexes[0] if indexes else None

    @staticmethod
    def _link(ipr: Any, index: int) -> Any:
        return ipr.get_links(index)[0]

    @staticmethod
    def _vrf_table_of(link: Any) -> Optional[int]:
        if link.get_nested("IFLA_LINKINFO", "IFLA_INFO_KIND") != "vrf":
            return None
        return link.get_nested("IFLA_LINKINFO", "IFLA_INFO_DATA", "IFLA_VRF_TABLE")

    def create_vrf_device(self, name: str, table_id: int) -> None:
        LOG.info("Creating VRF '%s' (table %s)", name, table_id)
        with self._ipr(f"create VRF {name}") as ipr:
            ipr.link("add", ifname=name, kind="vrf", vrf_table=table_id)
            index = self._index(ipr, name)
            if index is None:
                raise OperationalError(f"VRF {name} missing after creation")
            ipr.link("set", index=index, state="up")

    def delete_device(self, name: str) -> None:
        LOG.info("Deleting device '%s'", name)
        with self._ipr(f"delete device {name}") as ipr:
            index = self._index(ipr, name)
            if index is None:
                raise NotFoundError(f"device {name} does not exist")
            ipr.link("del", index=index)

    def device_exists(self, name: str) -> bool:
        with self._ipr(f"look up device {name}") as ipr:
            return self._index(ipr, name) is not None

    def list_vrf_devices(self) -> List[str]:
        with self._ipr("list VRF devices") as ipr:
            return [
                link.get_attr("IFLA_IFNAME")
                for link in ipr.get_links()
                if link.get_nested("IFLA_LINKINFO", "IFLA_INFO_KIND") == "vrf"
            ]

    def list_slaves(self, vrf: str) -> List[str]:
        with self._ipr(f"list devices of {vrf}") as ipr:
            index = self._index(ipr, vrf)
            if index is None:
                return []
            return [
                link.get_attr("IFLA_IFNAME")
                for link in ipr.get_links()
                if link.get_attr("IFLA_MASTER") == index
            ]

    def get_vrf_table(self, name: str) -> Optional[int]:
        with self._ipr(f"read table of {name}") as ipr:
            index = self._index(ipr, name)
            if index is None:
                return None
            return self._vrf_table_of(self._link(ipr, index))

    def get_slave_table(self, device: str) -> Optional[int]:
        with self._ipr(f"read VRF table of {device}") as ipr:
            index = self._index(ipr, device)
            if index is None:
                return None
            link = self._link(ipr, index)
            if link.get_nested("IFLA_LINKINFO", "IFLA_INFO_SLAVE_KIND") == "vrf":
                table = link.get_nested(
                    "IFLA_LINKINFO", "IFLA_INFO_SLAVE_DATA", "IFLA_VRF_PORT_TABLE"
                )
                if table is not None:
                    return table
            master = link.get_attr("IFLA_MASTER")
            if master is None:
                return None
            return self._vrf_table_of(self._link(ipr, master))

    def add_rule(
        self,
        direction: Direction,
        family: AddressFamily,
        selector: str,
        table: int,
        priority: int,
    ) -> None:
        LOG.debug("adding %s rule %s %s lookup %s", family.label, direction.value, selector, table)
        with self._ipr(f"add {family.label} {direction.value} rule for {selector}") as ipr:
            ipr.rule(
                "add",
                family=family.value,
                priority=priority,
                table=table,
                **{f"{direction.value}name": selector},
            )

    def delete_rule(self, direction: Direction, family: AddressFamily, selector: str) -> None:
        with self._ipr(f"delete {family.label} {direction.value} rule for {selector}") as ipr:
            ipr.rule("del", family=family.value, **{f"{direction.value}name": selector})

    def add_route(self, table: int, family: AddressFamily, metric: int) -> None:
        LOG.debug("adding unreachable %s default to table %s", family.label, table)
        with self._ipr(f"add {family.label} unreachable default to table {table}") as ipr:
            ipr.route(
                "add",
                family=family.value,
                dst="default",
                type="unreachable",
                table=table,
                priority=metric,
            )

    def delete_route(self, table: int, family: AddressFamily, metric: int) -> None:
        with self._ipr(f"delete {family.label} unreachable default from table {table}") as ipr:
            ipr.route(
                "del",
                family=family.value,
                dst="default",
                type="unreachable",
                table=table,
                priority=metric,
            )

    def dump_rules(self, family: AddressFamily) -> List[FibRule]:
        with self._ipr(f"dump {family.label} rules") as ipr:
            return [rule_from_msg(msg, family) for msg in ipr.get_rules(family=family.value)]

    def dump_routes(self, table: int, family: AddressFamily) -> List[Route]:
        with self._ipr(f"dump {family.label} routes of table {table}") as ipr:
            return [
                route_from_msg(msg, family, table)
                for msg in ipr.get_routes(family=family.value, table=table)
            ]
