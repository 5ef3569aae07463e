"""VRF lifecycle orchestration.

:class:`VrfManager` sequences the kernel, cgroup and service operations that
take a VRF from absent to configured and back.  Kernel capability is detected
once when the manager is built and handed to the rule manager and verifier.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .cgroup import CgroupClassifier
from .config import DEFAULT_VRF, Capability, VrfSettings
from .exceptions import InconsistencyError, NotFoundError, OperationalError, ValidationError
from .gateway import KernelGateway
from .routes import DefaultRouteManager
from .rules import FibRuleManager, detect_capability
from .services import ServiceManager
from .tables import TableResolver, validate_name, validate_table_id
from .utils import retry_call, vrf_lock
from .verify import VerificationReport, Verifier

LOG = logging.getLogger(__name__)


class VrfManager:
    def __init__(
        self,
        gateway: KernelGateway,
        services: ServiceManager,
        cgroups: CgroupClassifier,
        settings: Optional[VrfSettings] = None,
        capability: Optional[Capability] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = gateway
        self._services = services
        self._cgroups = cgroups
        self._settings = settings or VrfSettings()
        self._sleep = sleep
        self._capability = capability or detect_capability(gateway)
        self._resolver = TableResolver(gateway)
        self._routes = DefaultRouteManager(gateway, self._settings.default_route_metric)
        self._rules = FibRuleManager(gateway, self._capability, self._settings.rule_priority)
        self._verifier = Verifier(gateway, self._capability, self._routes)

    @property
    def capability(self) -> Capability:
        return self._capability

    @property
    def settings(self) -> VrfSettings:
        return self._settings

    def _lock(self, vrf: str):
        return vrf_lock(self._settings.lock_dir, vrf, sleep=self._sleep)

    def _table(self, value: Union[int, str], enforce_range: bool = False) -> int:
        return validate_table_id(
            value,
            tbid_min=self._settings.tbid_min,
            tbid_max=self._settings.tbid_max,
            enforce_range=enforce_range,
        )

    def _vrf_table(self, vrf: str) -> Optional[int]:
        """Table of VRF device ``vrf``; ``None`` if ``vrf`` is not a VRF device."""
        table_id = self._gateway.get_vrf_table(vrf)
        if table_id is None and vrf in self._gateway.list_vrf_devices():
            raise InconsistencyError(f"VRF {vrf} exists but table id lookup failed")
        return table_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def exists(self, vrf: str) -> bool:
        return self._gateway.get_vrf_table(vrf) is not None

    def list_vrfs(self) -> List[Tuple[str, Optional[int]]]:
        return [
            (name, self._gateway.get_vrf_table(name))
            for name in sorted(self._gateway.list_vrf_devices())
        ]

    def links(self, vrf: Optional[str] = None) -> Dict[str, List[str]]:
        names = [vrf] if vrf is not None else sorted(self._gateway.list_vrf_devices())
        for name in names:
            if not self.exists(name):
                raise NotFoundError(f"VRF {name} does not exist")
        return {name: sorted(self._gateway.list_slaves(name)) for name in names}

    def table_id(self, name: str) -> int:
        table_id = self._resolver.table_id_for(name)
        if table_id is None and name in self._gateway.list_vrf_devices():
            raise InconsistencyError(f"VRF {name} exists but table id lookup failed")
        if table_id is None:
            raise NotFoundError(f"no table id for {name}")
        return table_id

    def verify(self, vrf: Optional[str] = None, table_id: Optional[int] = None) -> VerificationReport:
        if vrf is not None:
            validate_name(vrf)
        return self._verifier.verify(vrf, table_id)

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------
    def configure(self, vrf: str, table_id: Union[int, str], boot: bool = False) -> bool:
        """Bring ``vrf`` to the configured state.

        Returns ``False`` when the VRF already verified clean and nothing was
        touched, ``True`` when the routes were rebuilt.
        """

        validate_name(vrf)
        table = self._table(table_id)
        with self._lock(vrf):
            return self._configure(vrf, table, boot)

    def _configure(self, vrf: str, table_id: int, boot: bool) -> bool:
        if self._verifier.verify(vrf, table_id).passed:
            LOG.debug("VRF %s already configured", vrf)
            return False

        if not boot:
            self._teardown(vrf, table_id)

        self._routes.install(table_id)

        if not boot:
            self._services.start_units(vrf)
        LOG.info("Configured VRF '%s' (table %s)", vrf, table_id)
        return True

    def teardown(self, vrf: str, table_id: Union[int, str, None] = None) -> bool:
        """Stop services, drop routes and the cgroup node of ``vrf``.

        Returns ``False`` if the cgroup node could not be removed.
        """

        validate_name(vrf)
        table = self._table(table_id) if table_id is not None else None
        with self._lock(vrf):
            return self._teardown(vrf, table)

    def _teardown(self, vrf: str, table_id: Optional[int]) -> bool:
        self._services.stop_units(vrf)

        if table_id is None:
            table_id = self._gateway.get_vrf_table(vrf)
        if table_id is not None:
            self._routes.remove(table_id)

        try:
            retry_call(
                lambda: self._cgroups.remove_node(vrf),
                attempts=self._settings.cgroup_remove_attempts,
                delay=self._settings.cgroup_remove_delay,
                sleep=self._sleep,
            )
        except OperationalError as exc:
            LOG.error("Failed to remove cgroup for VRF %s: %s", vrf, exc)
            return False
        return True

    def add(self, vrf: str, table_id: Union[int, str]) -> None:
        validate_name(vrf)
        table = self._table(table_id, enforce_range=True)

        with self._lock(vrf):
            if self._gateway.device_exists(vrf):
                live = self._vrf_table(vrf)
                if live is None:
                    raise ValidationError(f"device {vrf} exists and is not a VRF")
                if live != table:
                    raise ValidationError(
                        f"VRF {vrf} already exists with table {live}"
                    )
                LOG.info("VRF '%s' already exists", vrf)
            else:
                self._resolver.ensure_available(table, vrf)
                self._gateway.create_vrf_device(vrf, table)
                try:
                    self._rules.install(vrf, table)
                except OperationalError:
                    self._rules.remove(vrf)
                    self._gateway.delete_device(vrf)
                    raise
            self._configure(vrf, table, boot=False)

    def delete(self, vrf: str, table_id: Union[int, str, None] = None) -> bool:
        validate_name(vrf)
        table = self._table(table_id) if table_id is not None else None

        with self._lock(vrf):
            if not self._gateway.device_exists(vrf):
                raise NotFoundError(f"VRF {vrf} does not exist")
            if vrf not in self._gateway.list_vrf_devices():
                raise ValidationError(f"device {vrf} exists and is not a VRF")
            if table is None:
                table = self._gateway.get_vrf_table(vrf)
            clean = self._teardown(vrf, table)
            self._rules.remove(vrf)
            self._gateway.delete_device(vrf)
        LOG.info("Deleted VRF '%s'", vrf)
        return clean

    # ------------------------------------------------------------------
    # Task classification
    # ------------------------------------------------------------------
    def _check_target(self, vrf: str) -> None:
        validate_name(vrf, allow_default=True)
        if vrf != DEFAULT_VRF and not self.exists(vrf):
            raise NotFoundError(f"VRF {vrf} does not exist")

    def list_tasks(self, vrf: Optional[str] = None) -> Dict[str, List[int]]:
        if vrf is not None:
            self._check_target(vrf)
        return self._cgroups.list_tasks(vrf)

    def identify(self, pid: int) -> str:
        return self._cgroups.identify(pid)

    def assign_task(self, vrf: str, pid: int) -> None:
        self._check_target(vrf)
        self._cgroups.assign_task(vrf, pid)

    def exec_in(self, vrf: str, argv: Sequence[str]) -> None:
        self._check_target(vrf)
        self._cgroups.exec(vrf, argv)
