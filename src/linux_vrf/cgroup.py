"""Task classification through the l3mdev control group hierarchy.

Each VRF gets a directory below the hierarchy root; sockets opened by tasks
in that directory are bound to the VRF.  Tasks in the root belong to the
default VRF.
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import DEFAULT_VRF
from .exceptions import NotFoundError, OperationalError, ResourceBusyError

LOG = logging.getLogger(__name__)

PROCS_FILE = "cgroup.procs"
MASTER_DEVICE_FILE = "l3mdev.master-device"
CONTROLLER = "l3mdev"


class CgroupClassifier:
    def __init__(self, root: Path, proc_root: Path = Path("/proc")) -> None:
        self._root = Path(root)
        self._proc_root = Path(proc_root)

    def node(self, vrf: str) -> Path:
        return self._root if vrf == DEFAULT_VRF else self._root / vrf

    def ensure_node(self, vrf: str) -> Path:
        path = self.node(vrf)
        if vrf == DEFAULT_VRF:
            return path
        try:
            path.mkdir(exist_ok=True)
            master = path / MASTER_DEVICE_FILE
            if master.exists():
                master.write_text(vrf)
        except OSError as exc:
            raise OperationalError(f"failed to create cgroup for {vrf}: {exc}") from exc
        return path

    def remove_node(self, vrf: str) -> None:
        """Remove the VRF node; a node still holding tasks is busy."""

        try:
            self.node(vrf).rmdir()
        except FileNotFoundError:
            LOG.debug("cgroup for %s already absent", vrf)
        except OSError as exc:
            if exc.errno == errno.EBUSY:
                raise ResourceBusyError(f"cgroup for VRF {vrf} is busy") from exc
            raise OperationalError(f"failed to remove cgroup for {vrf}: {exc}") from exc

    def assign_task(self, vrf: str, pid: int) -> None:
        path = self.ensure_node(vrf) / PROCS_FILE
        LOG.debug("moving pid %s to %s", pid, path)
        try:
            with path.open("a") as fh:
                fh.write(f"{pid}\n")
        except OSError as exc:
            raise OperationalError(f"failed to move pid {pid} to VRF {vrf}: {exc}") from exc

    def _read_pids(self, path: Path) -> List[int]:
        try:
            return [int(line) for line in path.read_text().split() if line.isdigit()]
        except FileNotFoundError:
            return []

    def list_tasks(self, vrf: Optional[str] = None) -> Dict[str, List[int]]:
        if vrf is not None:
            return {vrf: self._read_pids(self.node(vrf) / PROCS_FILE)}
        if not self._root.is_dir():
            return {}
        return {
            entry.name: self._read_pids(entry / PROCS_FILE)
            for entry in sorted(self._root.iterdir())
            if entry.is_dir()
        }

    def identify(self, pid: int) -> str:
        """Name of the VRF ``pid`` is classified into."""

        path = self._proc_root / str(pid) / "cgroup"
        try:
            content = path.read_text()
        except FileNotFoundError as exc:
            raise NotFoundError(f"no such process {pid}") from exc

        # hierarchy-id:controller-list:path
        for line in content.splitlines():
            parts = line.split(":", 2)
            if len(parts) != 3 or CONTROLLER not in parts[1].split(","):
                continue
            name = parts[2].strip("/")
            return name or DEFAULT_VRF
        return DEFAULT_VRF

    def exec(self, vrf: str, argv: Sequence[str]) -> None:
        if not argv:
            raise ValueError("no command given")
        self.assign_task(vrf, os.getpid())
        os.execvp(argv[0], list(argv))
