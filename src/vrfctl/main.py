"""Entry point for the ``vrfctl`` command."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, Dict

from linux_vrf.cgroup import CgroupClassifier
from linux_vrf.config import VrfSettings
from linux_vrf.exceptions import VrfError
from linux_vrf.gateway import NetlinkGateway
from linux_vrf.lifecycle import VrfManager
from linux_vrf.services import NullServiceManager, SystemdServiceManager
from linux_vrf.tables import parse_table_id
from linux_vrf.verify import render_report

from .config import DEFAULT_CONFIG_PATH, load_config

LOG = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def build_manager(settings: VrfSettings) -> VrfManager:
    services = SystemdServiceManager() if settings.manage_services else NullServiceManager()
    return VrfManager(
        NetlinkGateway(),
        services,
        CgroupClassifier(settings.cgroup_root, settings.proc_root),
        settings,
    )


def _table_arg(value: str) -> int:
    try:
        return parse_table_id(value)
    except VrfError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _pid_arg(value: str) -> int:
    if not value.isdigit():
        raise argparse.ArgumentTypeError(f"invalid pid '{value}'")
    return int(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vrfctl", description="Manage and verify Linux VRFs")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the vrfctl configuration file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List VRFs and their tables")

    exists = sub.add_parser("exists", help="Exit 0 if the VRF exists")
    exists.add_argument("vrf")

    configure = sub.add_parser("configure", help="Install default routes and start services")
    configure.add_argument("vrf")
    configure.add_argument("table", type=_table_arg)
    configure.add_argument("mode", nargs="?", choices=["boot"])

    teardown = sub.add_parser("teardown", help="Stop services and remove default routes")
    teardown.add_argument("vrf")
    teardown.add_argument("table", nargs="?", type=_table_arg)

    verify = sub.add_parser("verify", help="Verify kernel state of one or all VRFs")
    verify.add_argument("vrf", nargs="?")
    verify.add_argument("table", nargs="?", type=_table_arg)
    verify.add_argument("--json", action="store_true", help="Print the report as JSON")

    add = sub.add_parser("add", help="Create a VRF")
    add.add_argument("vrf")
    add.add_argument("keyword", choices=["table"], metavar="table")
    add.add_argument("table")

    delete = sub.add_parser("del", help="Delete a VRF")
    delete.add_argument("vrf")
    delete.add_argument("table", nargs="?", type=_table_arg)

    task = sub.add_parser("task", help="Classify tasks into VRFs")
    task_sub = task.add_subparsers(dest="task_command", required=True)
    task_list = task_sub.add_parser("list", help="List tasks per VRF")
    task_list.add_argument("vrf", nargs="?")
    identify = task_sub.add_parser("identify", help="Print the VRF of a task")
    identify.add_argument("pid", type=_pid_arg)
    task_set = task_sub.add_parser("set", help="Move a task into a VRF")
    task_set.add_argument("vrf")
    task_set.add_argument("pid", type=_pid_arg)
    task_exec = task_sub.add_parser("exec", help="Run a command inside a VRF")
    task_exec.add_argument("vrf")
    task_exec.add_argument("argv", nargs=argparse.REMAINDER)

    link = sub.add_parser("link", help="Inspect VRF member devices")
    link_sub = link.add_subparsers(dest="link_command", required=True)
    link_list = link_sub.add_parser("list", help="List devices enslaved to VRFs")
    link_list.add_argument("vrf", nargs="?")

    return parser


def _cmd_list(manager: VrfManager, args: argparse.Namespace) -> int:
    for name, table in manager.list_vrfs():
        print(f"{name:<16} {table if table is not None else '-'}")
    return 0


def _cmd_exists(manager: VrfManager, args: argparse.Namespace) -> int:
    return 0 if manager.exists(args.vrf) else 1


def _cmd_configure(manager: VrfManager, args: argparse.Namespace) -> int:
    manager.configure(args.vrf, args.table, boot=args.mode == "boot")
    return 0


def _cmd_teardown(manager: VrfManager, args: argparse.Namespace) -> int:
    return 0 if manager.teardown(args.vrf, args.table) else 1


def _cmd_verify(manager: VrfManager, args: argparse.Namespace) -> int:
    report = manager.verify(args.vrf, args.table)
    if args.json:
        print(json.dumps(report.as_dict(), indent=2))
    else:
        print(render_report(report))
    return 0 if report.passed else 1


def _cmd_add(manager: VrfManager, args: argparse.Namespace) -> int:
    manager.add(args.vrf, args.table)
    return 0


def _cmd_del(manager: VrfManager, args: argparse.Namespace) -> int:
    return 0 if manager.delete(args.vrf, args.table) else 1


def _cmd_task(manager: VrfManager, args: argparse.Namespace) -> int:
    if args.task_command == "list":
        for vrf, pids in manager.list_tasks(args.vrf).items():
            print(f"{vrf}: {' '.join(str(p) for p in pids)}".rstrip())
    elif args.task_command == "identify":
        print(manager.identify(args.pid))
    elif args.task_command == "set":
        manager.assign_task(args.vrf, args.pid)
    elif args.task_command == "exec":
        manager.exec_in(args.vrf, args.argv)
    return 0


def _cmd_link(manager: VrfManager, args: argparse.Namespace) -> int:
    for vrf, devices in manager.links(args.vrf).items():
        print(f"{vrf}: {' '.join(devices)}".rstrip())
    return 0


COMMANDS: Dict[str, Callable[[VrfManager, argparse.Namespace], int]] = {
    "list": _cmd_list,
    "exists": _cmd_exists,
    "configure": _cmd_configure,
    "teardown": _cmd_teardown,
    "verify": _cmd_verify,
    "add": _cmd_add,
    "del": _cmd_del,
    "task": _cmd_task,
    "link": _cmd_link,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        manager = build_manager(config.to_settings())
        return COMMANDS[args.command](manager, args)
    except (VrfError, ValueError) as exc:
        print(f"vrfctl: error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
