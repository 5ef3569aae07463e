"""Start and stop the per-VRF service instances (``<unit>@<vrf>.service``)."""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, List

LOG = logging.getLogger(__name__)


class ServiceManager(ABC):
    @abstractmethod
    def start_units(self, vrf: str) -> None:
        """Start every unit instantiated for ``vrf``."""

    @abstractmethod
    def stop_units(self, vrf: str) -> None:
        """Stop every unit instantiated for ``vrf``."""


class NullServiceManager(ServiceManager):
    def start_units(self, vrf: str) -> None:
        LOG.debug("service management disabled, not starting units for %s", vrf)

    def stop_units(self, vrf: str) -> None:
        LOG.debug("service management disabled, not stopping units for %s", vrf)


def run(cmd: List[str]) -> subprocess.CompletedProcess:
    LOG.debug("Executing: %s", " ".join(cmd))
    return subprocess.run(cmd, check=False, text=True, capture_output=True)


class SystemdServiceManager(ServiceManager):
    """Best-effort systemd control; failures are logged, never raised."""

    def __init__(self, runner: Callable[[List[str]], subprocess.CompletedProcess] = run) -> None:
        self._run = runner

    def units_for(self, vrf: str) -> List[str]:
        try:
            result = self._run(
                [
                    "systemctl",
                    "list-units",
                    "--all",
                    "--plain",
                    "--no-legend",
                    "--no-pager",
                    f"*@{vrf}.service",
                ]
            )
        except OSError as exc:
            LOG.warning("Failed to list units for VRF %s: %s", vrf, exc)
            return []
        if result.returncode != 0:
            LOG.warning("Failed to list units for VRF %s: %s", vrf, result.stderr.strip())
            return []
        return [line.split()[0] for line in result.stdout.splitlines() if line.strip()]

    def _each(self, verb: str, vrf: str) -> None:
        for unit in self.units_for(vrf):
            try:
                result = self._run(["systemctl", verb, unit])
            except OSError as exc:
                LOG.warning("Failed to %s %s: %s", verb, unit, exc)
                continue
            if result.returncode != 0:
                LOG.warning("Failed to %s %s: %s", verb, unit, result.stderr.strip())
            else:
                LOG.info("%s %s", "Started" if verb == "start" else "Stopped", unit)

    def start_units(self, vrf: str) -> None:
        self._each("start", vrf)

    def stop_units(self, vrf: str) -> None:
        self._each("stop", vrf)
