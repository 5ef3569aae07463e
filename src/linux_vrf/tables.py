"""VRF name and routing table id validation.

Table ids are never generated here: the caller picks one and we only check it
against the allowed range and against the VRFs already present in the kernel.
"""

from __future__ import annotations

import re
from typing import Optional, Union

from .config import DEFAULT_VRF
from .exceptions import NotFoundError, ValidationError
from .gateway import KernelGateway

_NAME_RE = re.compile(r"[A-Za-z0-9_.-]+")


def validate_name(name: str, *, allow_default: bool = False) -> str:
    if not name or not _NAME_RE.fullmatch(name):
        raise ValidationError(f"invalid VRF name '{name}'")
    if name == DEFAULT_VRF and not allow_default:
        raise ValidationError(f"'{DEFAULT_VRF}' is reserved and cannot be used as a VRF name")
    return name


def parse_table_id(value: Union[str, int]) -> int:
    """Convert a digit-only string (or int) into a table id."""

    if isinstance(value, bool):
        raise ValidationError(f"invalid table id '{value}'")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"invalid table id '{value}'")
        return value
    if not value or not value.isascii() or not value.isdigit():
        raise ValidationError(f"invalid table id '{value}'")
    return int(value)


def validate_table_id(
    value: Union[str, int],
    *,
    tbid_min: int,
    tbid_max: int,
    enforce_range: bool = True,
) -> int:
    """Validate ``value``; the range is only enforced when adding a VRF."""

    table_id = parse_table_id(value)
    if enforce_range and not tbid_min <= table_id <= tbid_max:
        raise ValidationError(
            f"table id {table_id} out of range ({tbid_min}-{tbid_max})"
        )
    return table_id


class TableResolver:
    """Read table bindings back from the kernel."""

    def __init__(self, gateway: KernelGateway) -> None:
        self._gateway = gateway

    def lookup(self, vrf: str) -> int:
        table_id = self._gateway.get_vrf_table(vrf)
        if table_id is None:
            raise NotFoundError(f"no table id for VRF {vrf}")
        return table_id

    def lookup_by_device(self, device: str) -> int:
        table_id = self._gateway.get_slave_table(device)
        if table_id is None:
            raise NotFoundError(f"device {device} is not enslaved to a VRF")
        return table_id

    def table_id_for(self, name: str) -> Optional[int]:
        """Table id for a VRF or for a device enslaved to one.

        The VRF query wins; the enslaved-device query is only tried when the
        VRF query yields nothing.
        """

        table_id = self._gateway.get_vrf_table(name)
        if table_id is None:
            table_id = self._gateway.get_slave_table(name)
        return table_id

    def owner_of(self, table_id: int) -> Optional[str]:
        """Return the live VRF bound to ``table_id`` if any."""

        for name in self._gateway.list_vrf_devices():
            if self._gateway.get_vrf_table(name) == table_id:
                return name
        return None

    def ensure_available(self, table_id: int, vrf: str) -> None:
        owner = self.owner_of(table_id)
        if owner is not None and owner != vrf:
            raise ValidationError(f"table id {table_id} already in use by VRF {owner}")
