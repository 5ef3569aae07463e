import json

from linux_vrf.config import AddressFamily, Capability, Direction
from linux_vrf.routes import DefaultRouteManager
from linux_vrf.verify import RuleSnapshot, Severity, Verifier, render_report

V4 = AddressFamily.V4
V6 = AddressFamily.V6

BASE = """\
32765:\tfrom all lookup local
32766:\tfrom all lookup main
"""


def build_verifier(kernel, capability=Capability.LEGACY) -> Verifier:
    return Verifier(kernel, capability, DefaultRouteManager(kernel))


def configure_vrf(kernel, name="myvrf", table=1001):
    kernel.create_vrf_device(name, table)
    kernel.add_route(table, V4, 8192)
    kernel.add_route(table, V6, 8192)


def messages(findings):
    return [f.message for f in findings]


def test_duplicate_rule_is_a_warning(make_kernel):
    kernel = make_kernel(
        rules_v4="200:\tfrom all oif myvrf lookup myvrf\n"
        "200:\tfrom all iif myvrf lookup 1001\n" + BASE,
        rules_v6="200:\tfrom all oif myvrf lookup myvrf\n"
        "200:\tfrom all oif myvrf lookup 1001\n"
        "200:\tfrom all iif myvrf lookup myvrf\n" + BASE,
    )
    configure_vrf(kernel)

    report = build_verifier(kernel).verify("myvrf", 1001)

    sub = report.vrf("myvrf")
    assert sub.rule_counts == {
        (Direction.OIF, V4): 1,
        (Direction.IIF, V4): 1,
        (Direction.OIF, V6): 2,
        (Direction.IIF, V6): 1,
    }
    assert report.errors == []
    assert messages(report.warnings) == ["2 duplicate ipv6 oif rules for VRF myvrf"]
    assert report.passed


def test_missing_rule_is_an_error(make_kernel):
    kernel = make_kernel(rules_v4="200:\tfrom all oif myvrf lookup myvrf\n" + BASE)
    configure_vrf(kernel)

    report = build_verifier(kernel).verify("myvrf")

    assert not report.passed
    assert messages(report.errors) == [
        "missing ipv4 iif rule for VRF myvrf",
        "missing ipv6 oif rule for VRF myvrf",
        "missing ipv6 iif rule for VRF myvrf",
    ]


def test_rules_pointing_at_another_table_do_not_match(make_kernel):
    kernel = make_kernel(rules_v4="200:\tfrom all oif myvrf lookup 1002\n" + BASE)
    configure_vrf(kernel)

    report = build_verifier(kernel).verify("myvrf", 1001)

    assert report.vrf("myvrf").rule_counts[(Direction.OIF, V4)] == 0


def test_consolidated_kernel_skips_rule_checks(kernel):
    configure_vrf(kernel)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify("myvrf", 1001)

    assert report.passed
    assert report.vrf("myvrf").rule_counts == {}


def test_missing_default_routes(kernel):
    kernel.create_vrf_device("myvrf", 1001)
    kernel.add_route(1001, V4, 8192)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify("myvrf")

    sub = report.vrf("myvrf")
    assert sub.table_id == 1001
    assert sub.default_routes == {V4: True, V6: False}
    assert messages(report.errors) == ["missing ipv6 unreachable default route in table 1001"]


def test_table_id_mismatch_keeps_checking(kernel):
    configure_vrf(kernel, table=1001)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify("myvrf", 1002)

    sub = report.vrf("myvrf")
    assert sub.table_id_matches is False
    assert sub.table_id == 1002
    assert messages(report.errors) == [
        "table id mismatch: expected 1002, kernel has 1001",
        "missing ipv4 unreachable default route in table 1002",
        "missing ipv6 unreachable default route in table 1002",
    ]


def test_missing_vrf(kernel):
    report = build_verifier(kernel).verify("ghost")

    assert messages(report.errors) == ["VRF ghost does not exist"]
    assert kernel.calls == []


def test_vrf_without_table(kernel):
    kernel.vrfs["odd"] = None
    kernel.masters["odd"] = None

    report = build_verifier(kernel).verify("odd")

    assert messages(report.errors) == ["VRF odd exists but table id lookup failed"]
    assert report.vrf("odd").default_routes == {}


def test_all_vrfs_mode_continues_past_broken_vrf(kernel):
    kernel.vrfs["broken"] = None
    kernel.masters["broken"] = None
    configure_vrf(kernel, "red", 1001)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify()

    assert [v.name for v in report.vrfs] == ["broken", "red"]
    assert not report.vrf("broken").passed
    assert report.vrf("red").passed


def test_route_dump_failure_is_recorded_per_vrf(kernel):
    configure_vrf(kernel, "red", 1001)
    configure_vrf(kernel, "blue", 1002)
    kernel.fail("dump_routes", lambda table, family: table == 1001)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify()

    assert [v.name for v in report.vrfs] == ["blue", "red"]
    assert report.vrf("blue").passed
    red = report.vrf("red")
    assert [f.check for f in red.findings] == ["kernel-query"]
    assert red.findings[0].message == "cannot read routes of table 1001: dump_routes failed"
    assert red.default_routes == {}
    assert not report.passed


def test_table_query_failure_is_recorded_per_vrf(kernel):
    configure_vrf(kernel, "red", 1001)
    configure_vrf(kernel, "blue", 1002)
    kernel.fail("get_vrf_table", lambda name: name == "red")

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify()

    assert report.vrf("blue").passed
    assert messages(report.vrf("red").findings) == [
        "cannot read table id of VRF red: get_vrf_table failed"
    ]

    single = build_verifier(kernel).verify("red", 1001)
    assert messages(single.errors) == ["cannot read VRF red: get_vrf_table failed"]


def test_rules_are_counted_once_across_vrfs(make_kernel):
    kernel = make_kernel(
        rules_v4="200:\tfrom all oif red lookup red\n200:\tfrom all iif red lookup red\n" + BASE,
    )
    configure_vrf(kernel, "red", 1001)
    configure_vrf(kernel, "blue", 1002)

    report = build_verifier(kernel).verify()

    assert report.vrf("red").rule_counts[(Direction.OIF, V4)] == 1
    assert report.vrf("blue").rule_counts[(Direction.OIF, V4)] == 0


def test_detached_rules_reported_once_per_family(make_kernel):
    detached = (
        "200:\tfrom all oif gone [detached] lookup 1009\n"
        "200:\tfrom all iif gone [detached] lookup 1009\n"
    )
    kernel = make_kernel(rules_v4=detached + BASE, rules_v6=detached + BASE)

    report = build_verifier(kernel).verify()

    found = [f for f in report.findings if f.check == "detached-rules"]
    assert messages(found) == [
        "2 detached ipv4 rule(s) left behind by deleted devices",
        "2 detached ipv6 rule(s) left behind by deleted devices",
    ]


def test_single_vrf_mode_skips_global_checks(make_kernel):
    kernel = make_kernel(rules_v4="0:\tfrom all lookup local\n200:\tfrom all oif x [detached] lookup 5\n")
    configure_vrf(kernel)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify("myvrf")

    assert report.findings == []
    assert report.passed


def test_local_rule_first_is_an_error(make_kernel):
    kernel = make_kernel(
        rules_v4="0:\tfrom all lookup local\n32766:\tfrom all lookup main\n",
        rules_v6="1000:\tfrom all lookup [l3mdev-table]\n" + BASE,
    )

    report = build_verifier(kernel).verify()

    assert [f.check for f in report.findings] == ["local-rule-order"]
    assert "ipv4 local table rule has the lowest priority (0)" in report.findings[0].message


def test_consolidated_requires_ipv6_l3mdev_rule(make_kernel):
    kernel = make_kernel(rules_v4="1000:\tfrom all lookup [l3mdev-table]\n" + BASE)

    report = build_verifier(kernel, Capability.CONSOLIDATED).verify()

    assert "ipv6 l3mdev rule is missing" in messages(report.errors)


def test_consolidated_kernel_with_l3mdev_rules_passes(l3mdev_kernel):
    report = build_verifier(l3mdev_kernel, Capability.CONSOLIDATED).verify()

    assert report.findings == []
    assert report.passed


def test_snapshot_take_removes_matches(make_kernel):
    kernel = make_kernel(rules_v4="200:\tfrom all oif red lookup red\n" + BASE)
    snapshot = RuleSnapshot.capture(kernel)

    assert snapshot.take(Direction.OIF, V4, "red", 1001) == 1
    assert snapshot.take(Direction.OIF, V4, "red", 1001) == 0
    assert len(snapshot.original(V4)) == 3
    assert len(snapshot.remaining(V4)) == 2


def test_render_and_json(make_kernel):
    kernel = make_kernel(rules_v4="200:\tfrom all oif myvrf lookup myvrf\n" + BASE)
    configure_vrf(kernel)

    report = build_verifier(kernel).verify("myvrf", 1001)

    text = render_report(report)
    assert text.splitlines()[0] == "myvrf (table 1001): FAILED"
    assert "  ERROR: missing ipv4 iif rule for VRF myvrf" in text
    assert text.splitlines()[-1] == "verification failed: 3 error(s), 0 warning(s)"

    data = json.loads(json.dumps(report.as_dict()))
    assert data["passed"] is False
    assert data["capability"] == "legacy"
    assert data["vrfs"][0]["rules"]["ipv4 oif"] == 1
    assert data["vrfs"][0]["default_routes"] == {"ipv4": True, "ipv6": True}
    assert {f["severity"] for f in data["vrfs"][0]["findings"]} == {Severity.ERROR.value}
