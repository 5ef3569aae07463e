"""Unreachable default routes that stop lookups falling out of a VRF table."""

from __future__ import annotations

import logging
from typing import Dict

from .config import AddressFamily
from .exceptions import OperationalError
from .gateway import KernelGateway

LOG = logging.getLogger(__name__)

FAMILIES = (AddressFamily.V4, AddressFamily.V6)


class DefaultRouteManager:
    def __init__(self, gateway: KernelGateway, metric: int = 8192) -> None:
        self._gateway = gateway
        self._metric = metric

    def install(self, table_id: int) -> None:
        """Install IPv4 then IPv6; an IPv4 failure skips IPv6 entirely."""

        for family in FAMILIES:
            try:
                self._gateway.add_route(table_id, family, self._metric)
            except OperationalError as exc:
                LOG.error(
                    "Failed to install %s unreachable default route in table %s: %s",
                    family.label,
                    table_id,
                    exc,
                )
                raise
        LOG.info("Installed unreachable default routes in table %s", table_id)

    def remove(self, table_id: int) -> None:
        for family in FAMILIES:
            try:
                self._gateway.delete_route(table_id, family, self._metric)
            except OperationalError as exc:
                LOG.debug(
                    "ignoring failure to remove %s default from table %s: %s",
                    family.label,
                    table_id,
                    exc,
                )

    def verify(self, table_id: int) -> Dict[AddressFamily, bool]:
        """Presence of the unreachable default per family (metric not checked)."""

        return {
            family: any(
                route.is_unreachable_default
                for route in self._gateway.dump_routes(table_id, family)
            )
            for family in FAMILIES
        }
