"""YAML configuration loader for vrfctl."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from linux_vrf.config import VrfSettings

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/vrfctl/vrfctl.yaml")

_DEFAULTS = VrfSettings()


@dataclass
class TablesConfig:
    min: int = _DEFAULTS.tbid_min
    max: int = _DEFAULTS.tbid_max


@dataclass
class CgroupConfig:
    root: Path = _DEFAULTS.cgroup_root
    proc_root: Path = _DEFAULTS.proc_root
    remove_attempts: int = _DEFAULTS.cgroup_remove_attempts
    remove_delay: float = _DEFAULTS.cgroup_remove_delay


@dataclass
class CtlConfig:
    tables: TablesConfig = field(default_factory=TablesConfig)
    route_metric: int = _DEFAULTS.default_route_metric
    rule_priority: int = _DEFAULTS.rule_priority
    cgroup: CgroupConfig = field(default_factory=CgroupConfig)
    manage_services: bool = _DEFAULTS.manage_services
    lock_dir: Optional[Path] = _DEFAULTS.lock_dir

    def to_settings(self) -> VrfSettings:
        return VrfSettings(
            tbid_min=self.tables.min,
            tbid_max=self.tables.max,
            default_route_metric=self.route_metric,
            rule_priority=self.rule_priority,
            cgroup_root=self.cgroup.root,
            proc_root=self.cgroup.proc_root,
            cgroup_remove_attempts=self.cgroup.remove_attempts,
            cgroup_remove_delay=self.cgroup.remove_delay,
            lock_dir=self.lock_dir,
            manage_services=self.manage_services,
        )


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _parse_tables(section: dict) -> TablesConfig:
    tables = TablesConfig(
        min=int(section.get("min", _DEFAULTS.tbid_min)),
        max=int(section.get("max", _DEFAULTS.tbid_max)),
    )
    if tables.min > tables.max:
        raise ValueError(f"tables.min ({tables.min}) is greater than tables.max ({tables.max})")
    return tables


def _parse_cgroup(section: dict) -> CgroupConfig:
    attempts = int(section.get("remove_attempts", _DEFAULTS.cgroup_remove_attempts))
    if attempts < 1:
        raise ValueError("cgroup.remove_attempts must be at least 1")
    return CgroupConfig(
        root=Path(section.get("root", _DEFAULTS.cgroup_root)),
        proc_root=Path(section.get("proc_root", _DEFAULTS.proc_root)),
        remove_attempts=attempts,
        remove_delay=float(section.get("remove_delay", _DEFAULTS.cgroup_remove_delay)),
    )


def load_config(path: Path) -> CtlConfig:
    """Load ``path``; a missing file means every default applies."""

    if not path.exists():
        LOG.debug("configuration file %s not found, using defaults", path)
        return CtlConfig()

    data = yaml.safe_load(path.read_text())
    if data is None:
        return CtlConfig()
    if not isinstance(data, dict):
        raise ValueError("vrfctl configuration must be a mapping")

    lock_dir = data.get("lock_dir", _DEFAULTS.lock_dir)

    return CtlConfig(
        tables=_parse_tables(_section(data, "tables")),
        route_metric=int(_section(data, "routes").get("metric", _DEFAULTS.default_route_metric)),
        rule_priority=int(_section(data, "rules").get("priority", _DEFAULTS.rule_priority)),
        cgroup=_parse_cgroup(_section(data, "cgroup")),
        manage_services=bool(_section(data, "services").get("enabled", _DEFAULTS.manage_services)),
        lock_dir=Path(lock_dir) if lock_dir else None,
    )
