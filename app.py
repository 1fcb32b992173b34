from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from openasphalte import __version__
from openasphalte.core.config.manager import ConfigManager
from openasphalte.core.config.paths import ConfigFsPaths, default_root
from openasphalte.core.errors import ModuleManagerError
from openasphalte.core.logger import setup_logging
from openasphalte.core.modules import ModuleManager
from openasphalte.core.modules.cli import (
    catalog_lines,
    error_lines,
    installed_lines,
    module_update_lines,
    plan_lines,
    reconcile_lines,
    report_lines,
    update_lines,
)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="OpenAsphalte module manager")
    ap.add_argument("--home", default=None, help="Configuration root (default: per-user config directory).")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="group", required=True)

    modules = sub.add_parser("modules", help="Install, update and remove modules.")
    msub = modules.add_subparsers(dest="command", required=True)
    msub.add_parser("list", help="Installed modules.")
    cat = msub.add_parser("catalog", help="Available modules from all sources.")
    cat.add_argument("--updates", action="store_true", help="Only show new and updatable modules.")
    inst = msub.add_parser("install", help="Install modules and their dependencies.")
    inst.add_argument("ids", nargs="+")
    inst.add_argument("--upgrade", action="store_true", help="Upgrade requested modules to the newest version.")
    inst.add_argument("--dry-run", action="store_true", help="Print the plan without applying it.")
    rm = msub.add_parser("uninstall", help="Stage modules for removal at next start.")
    rm.add_argument("ids", nargs="+")
    rs = msub.add_parser("restore", help="Cancel a staged removal.")
    rs.add_argument("id")
    msub.add_parser("reconcile", help="Run the startup reconciliation pass now.")
    msub.add_parser("check-update", help="Check for a newer OpenAsphalte release.")
    return ap


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    fs = ConfigFsPaths(args.home or default_root())
    logger = setup_logging(fs.logs_dir)
    try:
        config = ConfigManager(fs=fs, logger=logger)
        config.load_all()
        manager = ModuleManager(config)
        if args.command == "reconcile":
            lines = reconcile_lines(manager.startup())
        else:
            manager.startup()
            lines = _dispatch(manager, args)
    except ModuleManagerError as e:
        for line in error_lines(e):
            print(line, file=sys.stderr)
        return 2

    for line in lines:
        print(line)
    return 0


def _dispatch(manager: ModuleManager, args: argparse.Namespace) -> List[str]:
    if args.command == "list":
        return installed_lines(manager.list_installed(), manager.list_pending())
    if args.command == "catalog":
        if args.updates:
            return module_update_lines(manager.list_updates())
        return catalog_lines(manager.fetch_catalog(), manager.list_installed())
    if args.command == "install":
        plan = manager.plan(args.ids, upgrade=args.upgrade)
        if args.dry_run:
            return plan_lines(plan)
        return plan_lines(plan) + report_lines(manager.installer.apply(plan))
    if args.command == "uninstall":
        return report_lines(manager.uninstall(args.ids))
    if args.command == "restore":
        rec = manager.restore(args.id)
        return [f"Restored {rec.identifier} {rec.version}."]
    if args.command == "check-update":
        return update_lines(manager.check_for_update())
    raise ValueError(f"unknown command: {args.command}")


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
