"""Compare live kernel routing state against the expected VRF layout.

The verifier never mutates the kernel.  It takes one snapshot of the policy
rules per run and checks every VRF against it:

* the table id read back from the VRF device (and, when given, that it equals
  the expected id);
* the unreachable IPv4/IPv6 default routes in the VRF table;
* on legacy kernels, exactly one oif and one iif rule per family.  Rules
  pointing at either the VRF name or the table id are accepted since some
  kernels print the table name back as the VRF name.  Matched rules are
  removed from the in-memory snapshot so they are counted once, and a second
  match for the same shape is reported as a duplicate.

When every VRF is checked, the rules left over that are still marked detached
belong to devices that were deleted without cleaning up, and the global rule
layout is checked as well: the ``local`` table lookup must not be the first
rule (that would bypass the VRF rules) and consolidated kernels must carry
the IPv6 l3mdev rule.

Every failed check is recorded as a :class:`Finding`, including kernel queries
that fail for one VRF; only a VRF whose table cannot be determined at all
stops early.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import AddressFamily, Capability, Direction, FibRule
from .exceptions import OperationalError
from .gateway import KernelGateway
from .routes import FAMILIES, DefaultRouteManager
from .rules import LEGACY_RULE_SHAPES, has_l3mdev_rule

LOG = logging.getLogger(__name__)


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Finding:
    severity: Severity
    check: str
    message: str
    vrf: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "check": self.check,
            "message": self.message,
            "vrf": self.vrf,
        }


@dataclass
class VrfReport:
    """Result of the per-VRF checks."""

    name: str
    table_id: Optional[int] = None
    table_id_matches: Optional[bool] = None
    default_routes: Dict[AddressFamily, bool] = field(default_factory=dict)
    rule_counts: Dict[Tuple[Direction, AddressFamily], int] = field(default_factory=dict)
    findings: List[Finding] = field(default_factory=list)

    def error(self, check: str, message: str) -> None:
        self.findings.append(Finding(Severity.ERROR, check, message, self.name))

    def warning(self, check: str, message: str) -> None:
        self.findings.append(Finding(Severity.WARNING, check, message, self.name))

    @property
    def passed(self) -> bool:
        return not any(f.severity is Severity.ERROR for f in self.findings)

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "table_id": self.table_id,
            "table_id_matches": self.table_id_matches,
            "default_routes": {
                family.label: present for family, present in self.default_routes.items()
            },
            "rules": {
                f"{family.label} {direction.value}": count
                for (direction, family), count in self.rule_counts.items()
            },
            "passed": self.passed,
            "findings": [f.as_dict() for f in self.findings],
        }


@dataclass
class VerificationReport:
    capability: Capability
    vrfs: List[VrfReport] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)

    def error(self, check: str, message: str) -> None:
        self.findings.append(Finding(Severity.ERROR, check, message))

    @property
    def all_findings(self) -> List[Finding]:
        found = [f for vrf in self.vrfs for f in vrf.findings]
        return found + self.findings

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.all_findings if f.severity is Severity.ERROR]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.all_findings if f.severity is Severity.WARNING]

    @property
    def passed(self) -> bool:
        return not self.errors

    def vrf(self, name: str) -> Optional[VrfReport]:
        return next((v for v in self.vrfs if v.name == name), None)

    def as_dict(self) -> dict:
        return {
            "passed": self.passed,
            "capability": self.capability.value,
            "vrfs": [v.as_dict() for v in self.vrfs],
            "findings": [f.as_dict() for f in self.findings],
        }


def rule_matches(rule: FibRule, direction: Direction, vrf: str, table_id: int) -> bool:
    """``<direction> <vrf> lookup <vrf>`` or ``<direction> <vrf> lookup <table_id>``."""

    if rule.detached or rule.action != "lookup":
        return False
    if rule.selector(direction) != vrf:
        return False
    return rule.table_name == vrf or rule.table == table_id


class RuleSnapshot:
    """Policy rules captured once per run, consumed as VRFs are checked."""

    def __init__(self, rules: Dict[AddressFamily, List[FibRule]]) -> None:
        self._original = {family: list(rules.get(family, [])) for family in FAMILIES}
        self._remaining = {family: list(rules.get(family, [])) for family in FAMILIES}

    @classmethod
    def capture(cls, gateway: KernelGateway) -> "RuleSnapshot":
        return cls({family: gateway.dump_rules(family) for family in FAMILIES})

    def original(self, family: AddressFamily) -> List[FibRule]:
        return list(self._original[family])

    def remaining(self, family: AddressFamily) -> List[FibRule]:
        return list(self._remaining[family])

    def take(self, direction: Direction, family: AddressFamily, vrf: str, table_id: int) -> int:
        """Remove the rules matching the shape and return how many there were."""

        kept = []
        count = 0
        for rule in self._remaining[family]:
            if rule_matches(rule, direction, vrf, table_id):
                count += 1
            else:
                kept.append(rule)
        self._remaining[family] = kept
        return count

    def pop_detached(self, family: AddressFamily) -> List[FibRule]:
        detached = [r for r in self._remaining[family] if r.detached]
        self._remaining[family] = [r for r in self._remaining[family] if not r.detached]
        return detached


class Verifier:
    def __init__(
        self,
        gateway: KernelGateway,
        capability: Capability,
        routes: DefaultRouteManager,
    ) -> None:
        self._gateway = gateway
        self._capability = capability
        self._routes = routes

    def verify(self, vrf: Optional[str] = None, table_id: Optional[int] = None) -> VerificationReport:
        """Check one VRF, or every VRF plus the global rule layout."""

        report = VerificationReport(capability=self._capability)
        snapshot = RuleSnapshot.capture(self._gateway)

        if vrf is not None:
            report.vrfs.append(self._verify_one(vrf, table_id, snapshot))
            return report

        for name in sorted(self._gateway.list_vrf_devices()):
            sub = VrfReport(name=name)
            report.vrfs.append(sub)
            try:
                table = self._gateway.get_vrf_table(name)
            except OperationalError as exc:
                sub.error("kernel-query", f"cannot read table id of VRF {name}: {exc}")
                continue
            if table is None:
                sub.error("table-id", f"VRF {name} is misconfigured: no table id")
                continue
            sub.table_id = table
            self._check_vrf(sub, table, snapshot)

        self._check_detached(report, snapshot)
        self._check_local_rule_order(report, snapshot)
        if self._capability is Capability.CONSOLIDATED:
            self._check_l3mdev_rule(report, snapshot)
        return report

    def _verify_one(self, name: str, expected: Optional[int], snapshot: RuleSnapshot) -> VrfReport:
        sub = VrfReport(name=name)
        try:
            live = self._gateway.get_vrf_table(name)
            exists = live is not None or self._gateway.device_exists(name)
        except OperationalError as exc:
            sub.error("kernel-query", f"cannot read VRF {name}: {exc}")
            return sub

        if live is None:
            if not exists:
                sub.error("exists", f"VRF {name} does not exist")
                return sub
            sub.error("table-id", f"VRF {name} exists but table id lookup failed")
            if expected is None:
                return sub
        elif expected is not None:
            sub.table_id_matches = live == expected
            if not sub.table_id_matches:
                sub.error(
                    "table-id",
                    f"table id mismatch: expected {expected}, kernel has {live}",
                )

        table = expected if expected is not None else live
        sub.table_id = table
        self._check_vrf(sub, table, snapshot)
        return sub

    def _check_vrf(self, sub: VrfReport, table_id: int, snapshot: RuleSnapshot) -> None:
        try:
            sub.default_routes = self._routes.verify(table_id)
        except OperationalError as exc:
            sub.error("kernel-query", f"cannot read routes of table {table_id}: {exc}")
        for family, present in sub.default_routes.items():
            if not present:
                sub.error(
                    "default-route",
                    f"missing {family.label} unreachable default route in table {table_id}",
                )

        if self._capability is not Capability.LEGACY:
            return

        for direction, family in LEGACY_RULE_SHAPES:
            count = snapshot.take(direction, family, sub.name, table_id)
            sub.rule_counts[(direction, family)] = count
            if count == 0:
                sub.error(
                    "fib-rule",
                    f"missing {family.label} {direction.value} rule for VRF {sub.name}",
                )
            elif count > 1:
                sub.warning(
                    "fib-rule",
                    f"{count} duplicate {family.label} {direction.value} rules for VRF {sub.name}",
                )

    def _check_detached(self, report: VerificationReport, snapshot: RuleSnapshot) -> None:
        for family in FAMILIES:
            detached = snapshot.pop_detached(family)
            if detached:
                LOG.debug("detached %s rules: %s", family.label, detached)
                report.error(
                    "detached-rules",
                    f"{len(detached)} detached {family.label} rule(s) left behind by deleted devices",
                )

    def _check_local_rule_order(self, report: VerificationReport, snapshot: RuleSnapshot) -> None:
        for family in FAMILIES:
            rules = snapshot.original(family)
            if not rules:
                continue
            first = min(rules, key=lambda r: r.priority)
            if first.is_local_lookup:
                report.error(
                    "local-rule-order",
                    f"{family.label} local table rule has the lowest priority "
                    f"({first.priority}); VRF rules are bypassed",
                )

    def _check_l3mdev_rule(self, report: VerificationReport, snapshot: RuleSnapshot) -> None:
        if not has_l3mdev_rule(snapshot.original(AddressFamily.V6)):
            report.error("l3mdev-rule", "ipv6 l3mdev rule is missing")


def render_report(report: VerificationReport) -> str:
    """Human readable form of ``report``."""

    lines = []
    for sub in report.vrfs:
        table = sub.table_id if sub.table_id is not None else "?"
        status = "ok" if sub.passed else "FAILED"
        lines.append(f"{sub.name} (table {table}): {status}")
        for finding in sub.findings:
            lines.append(f"  {finding.severity.value.upper()}: {finding.message}")
    for finding in report.findings:
        lines.append(f"{finding.severity.value.upper()}: {finding.message}")

    errors, warnings = len(report.errors), len(report.warnings)
    if report.passed:
        summary = "verification passed"
        if warnings:
            summary += f" with {warnings} warning(s)"
    else:
        summary = f"verification failed: {errors} error(s), {warnings} warning(s)"
    lines.append(summary)
    return "\n".join(lines)
