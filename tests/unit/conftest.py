from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from linux_vrf.cgroup import CgroupClassifier
from linux_vrf.config import AddressFamily, Direction, FibRule, Route, VrfSettings
from linux_vrf.exceptions import NotFoundError, OperationalError
from linux_vrf.gateway import KernelGateway
from linux_vrf.services import ServiceManager

from ruledump import parse_rule_dump

V4 = AddressFamily.V4
V6 = AddressFamily.V6

BASE_RULES = """\
32765:\tfrom all lookup local
32766:\tfrom all lookup main
32767:\tfrom all lookup default
"""

L3MDEV_RULES = "1000:\tfrom all lookup [l3mdev-table]\n" + BASE_RULES


class FakeKernel(KernelGateway):
    """In-memory kernel recording every call made through the gateway."""

    def __init__(self, rules_v4: str = BASE_RULES, rules_v6: str = BASE_RULES) -> None:
        self.vrfs: Dict[str, Optional[int]] = {}
        self.masters: Dict[str, Optional[str]] = {}
        self.rules: Dict[AddressFamily, List[FibRule]] = {
            V4: parse_rule_dump(rules_v4, V4),
            V6: parse_rule_dump(rules_v6, V6),
        }
        self.routes: Dict[Tuple[int, AddressFamily], List[Route]] = defaultdict(list)
        self.calls: List[tuple] = []
        self._failures: Dict[str, Callable[..., bool]] = {}

    # -- test helpers ---------------------------------------------------
    def fail(self, op: str, when: Callable[..., bool] = lambda *args: True) -> None:
        self._failures[op] = when

    def _call(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        self._check(op, *args)

    def _check(self, op: str, *args) -> None:
        """Raise for an injected failure without recording a mutation."""
        when = self._failures.get(op)
        if when is not None and when(*args):
            raise OperationalError(f"{op} failed")

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def add_slave(self, device: str, vrf: str) -> None:
        self.masters[device] = vrf

    def set_rules(self, family: AddressFamily, text: str) -> None:
        self.rules[family] = parse_rule_dump(text, family)

    # -- KernelGateway ----------------------------------------------------
    def create_vrf_device(self, name: str, table_id: int) -> None:
        self._call("create_vrf_device", name, table_id)
        self.vrfs[name] = table_id
        self.masters[name] = None

    def delete_device(self, name: str) -> None:
        self._call("delete_device", name)
        if name not in self.masters:
            raise NotFoundError(f"device {name} does not exist")
        del self.masters[name]
        self.vrfs.pop(name, None)
        for family, rules in self.rules.items():
            self.rules[family] = [
                replace(rule, detached=True)
                if name in (rule.iif, rule.oif)
                else rule
                for rule in rules
            ]

    def device_exists(self, name: str) -> bool:
        return name in self.masters

    def list_vrf_devices(self) -> List[str]:
        return list(self.vrfs)

    def list_slaves(self, vrf: str) -> List[str]:
        return [dev for dev, master in self.masters.items() if master == vrf]

    def get_vrf_table(self, name: str) -> Optional[int]:
        self._check("get_vrf_table", name)
        return self.vrfs.get(name)

    def get_slave_table(self, device: str) -> Optional[int]:
        master = self.masters.get(device)
        return self.vrfs.get(master) if master else None

    def add_rule(self, direction, family, selector, table, priority) -> None:
        self._call("add_rule", direction, family, selector, table, priority)
        self.rules[family].append(
            FibRule(priority=priority, family=family, table=table, **{direction.value: selector})
        )
        self.rules[family].sort(key=lambda r: r.priority)

    def delete_rule(self, direction: Direction, family: AddressFamily, selector: str) -> None:
        self._call("delete_rule", direction, family, selector)
        for rule in self.rules[family]:
            if rule.selector(direction) == selector:
                self.rules[family].remove(rule)
                return
        raise OperationalError("No such file or directory")

    def add_route(self, table: int, family: AddressFamily, metric: int) -> None:
        self._call("add_route", table, family, metric)
        routes = self.routes[(table, family)]
        if any(r.is_unreachable_default and r.metric == metric for r in routes):
            raise OperationalError("File exists")
        routes.append(Route(family=family, table=table, kind="unreachable", metric=metric))

    def delete_route(self, table: int, family: AddressFamily, metric: int) -> None:
        self._call("delete_route", table, family, metric)
        routes = self.routes[(table, family)]
        for route in routes:
            if route.is_unreachable_default and route.metric == metric:
                routes.remove(route)
                return
        raise OperationalError("No such process")

    def dump_rules(self, family: AddressFamily) -> List[FibRule]:
        return list(self.rules[family])

    def dump_routes(self, table: int, family: AddressFamily) -> List[Route]:
        self._check("dump_routes", table, family)
        return list(self.routes[(table, family)])


class RecordingServices(ServiceManager):
    def __init__(self) -> None:
        self.events: List[Tuple[str, str]] = []

    def start_units(self, vrf: str) -> None:
        self.events.append(("start", vrf))

    def stop_units(self, vrf: str) -> None:
        self.events.append(("stop", vrf))


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def make_kernel() -> Callable[..., FakeKernel]:
    return FakeKernel


@pytest.fixture
def kernel() -> FakeKernel:
    return FakeKernel()


@pytest.fixture
def l3mdev_kernel() -> FakeKernel:
    return FakeKernel(rules_v4=L3MDEV_RULES, rules_v6=L3MDEV_RULES)


@pytest.fixture
def services() -> RecordingServices:
    return RecordingServices()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings(tmp_path: Path) -> VrfSettings:
    cgroup_root = tmp_path / "cgroup"
    cgroup_root.mkdir()
    return VrfSettings(
        cgroup_root=cgroup_root,
        proc_root=tmp_path / "proc",
        lock_dir=tmp_path / "locks",
    )


@pytest.fixture
def cgroups(settings: VrfSettings) -> CgroupClassifier:
    return CgroupClassifier(settings.cgroup_root, settings.proc_root)
