"""Policy rule helpers: capability detection and per-VRF rule management."""

from __future__ import annotations

import logging
from typing import Iterable

from .config import AddressFamily, Capability, Direction, FibRule
from .exceptions import OperationalError
from .gateway import KernelGateway

LOG = logging.getLogger(__name__)

LEGACY_RULE_SHAPES = (
    (Direction.OIF, AddressFamily.V4),
    (Direction.IIF, AddressFamily.V4),
    (Direction.OIF, AddressFamily.V6),
    (Direction.IIF, AddressFamily.V6),
)


def has_l3mdev_rule(rules: Iterable[FibRule]) -> bool:
    return any(rule.l3mdev for rule in rules)


def detect_capability(gateway: KernelGateway) -> Capability:
    """Decide between the consolidated l3mdev rule and legacy rule pairs.

    Computed once per run from the IPv4 rule table and handed to whoever
    needs it; nothing is cached between invocations.
    """

    if has_l3mdev_rule(gateway.dump_rules(AddressFamily.V4)):
        LOG.debug("kernel has the l3mdev rule, per-VRF rules not needed")
        return Capability.CONSOLIDATED
    LOG.debug("no l3mdev rule found, using per-VRF rules")
    return Capability.LEGACY


class FibRuleManager:
    """Install and remove the oif/iif rule pairs of a VRF on legacy kernels."""

    def __init__(self, gateway: KernelGateway, capability: Capability, priority: int = 200) -> None:
        self._gateway = gateway
        self._capability = capability
        self._priority = priority

    @property
    def capability(self) -> Capability:
        return self._capability

    def install(self, vrf: str, table_id: int) -> None:
        """Install the four rules, stopping at the first failure.

        Rules installed before the failure stay in place; the caller is
        expected to run :meth:`remove`.
        """

        if self._capability is Capability.CONSOLIDATED:
            return

        for direction, family in LEGACY_RULE_SHAPES:
            try:
                self._gateway.add_rule(direction, family, vrf, table_id, self._priority)
            except OperationalError as exc:
                LOG.error(
                    "Failed to add %s %s rule for VRF %s: %s",
                    family.label,
                    direction.value,
                    vrf,
                    exc,
                )
                raise

    def remove(self, vrf: str) -> None:
        if self._capability is Capability.CONSOLIDATED:
            return

        for direction, family in LEGACY_RULE_SHAPES:
            try:
                self._gateway.delete_rule(direction, family, vrf)
            except OperationalError as exc:
                LOG.debug(
                    "ignoring failure to delete %s %s rule for %s: %s",
                    family.label,
                    direction.value,
                    vrf,
                    exc,
                )
