"""Startup sequence of an analysis manager process.

Resolves the manager settings, recovers from an unclean previous run and
optionally verifies that the plugins of the given step tools can be loaded.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__
from .cleanup import RecoveryManager
from .config import AppConfig, load_all
from .logging_setup import get_logger, init_logging, log_kv
from .params import (
    MGR_PARAM_MGR_ACTIVE,
    MGR_PARAM_MGR_CFG_DB_CONN_STRING,
    MGR_PARAM_MGR_NAME,
    MGR_PARAM_WORK_DIR,
    ConfigStore,
)
from .plugins import PluginResolver
from .settings import SettingsResolver, disable_manager_locally, load_local_params
from .summary import RunSummary

EXIT_OK = 0
EXIT_SETTINGS_FAILED = 1
EXIT_RECOVERY_FAILED = 2
EXIT_PLUGIN_FAILED = 3

SUMMARY_FILE = "AnalysisSummary.txt"

logger = get_logger("analysismgr.main")


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="analysismgr", description="Analysis manager bootstrap")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--dir", type=Path, help="Manager directory (overrides ANALYSISMGR_DIR)")
    parser.add_argument("--offline", action="store_true", help="Load settings from ManagerSettingsLocal.yaml")
    parser.add_argument("--trace", action="store_true", help="Show debug messages on the console")
    parser.add_argument(
        "--disable",
        action="store_true",
        help="Set MgrActive_Local=False in the local params file and exit",
    )
    parser.add_argument(
        "--check-plugins",
        nargs="+",
        metavar="TOOL",
        default=[],
        help="Resolve the resourcer and tool runner of each step tool",
    )
    return parser.parse_args(argv)


def _apply_args(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    manager = cfg.manager
    if args.dir is not None:
        manager = replace(manager, manager_dir=args.dir.expanduser())
    if args.offline:
        manager = replace(manager, offline=True)
    if args.trace:
        manager = replace(manager, trace=True)
    return replace(cfg, manager=manager)


def check_plugins(resolver: PluginResolver, tools: Sequence[str]) -> bool:
    ok = True
    for tool in tools:
        for result in (resolver.resolve_resource_stager(tool), resolver.resolve_tool_runner(tool)):
            ok = ok and result.ok
    return ok


def run(cfg: AppConfig, tools: Sequence[str] = ()) -> int:
    """Run the startup sequence and return the process exit code."""

    manager = cfg.manager
    params_path = manager.local_params_path
    local_params = load_local_params(params_path)
    if local_params is None:
        logger.error("Local params file not found: %s", params_path)
        return EXIT_SETTINGS_FAILED

    resolver = SettingsResolver(
        manager.manager_dir,
        offline=manager.offline,
        attempts=cfg.retry.service_attempts,
        holdoff=cfg.retry.service_holdoff,
        maintenance_window=manager.maintenance_window,
    )
    result = resolver.resolve(local_params)
    if result.deactivated:
        logger.info("Manager is deactivated locally; exiting")
        return EXIT_OK
    if not result.ok:
        logger.error("Unable to resolve manager settings: %s", result.message)
        return EXIT_SETTINGS_FAILED

    params: ConfigStore = result.params
    if not manager.offline and not params.get_bool(MGR_PARAM_MGR_ACTIVE, False):
        logger.info("Manager is inactive according to the control service; exiting")
        return EXIT_OK

    try:
        recovery = RecoveryManager(
            manager.manager_dir,
            params.get_param(MGR_PARAM_WORK_DIR),
            params.get_param(MGR_PARAM_MGR_NAME),
            control_endpoint=params.get_param(MGR_PARAM_MGR_CFG_DB_CONN_STRING),
            offline=manager.offline,
            delete_attempts=cfg.retry.delete_attempts,
            holdoff_seconds=cfg.retry.cleanup_holdoff,
            developer_hosts=manager.developer_hosts,
        )
    except ValueError as exc:
        logger.error("Unable to start crash recovery: %s", exc)
        return EXIT_RECOVERY_FAILED
    if not recovery.check_prior_crash(params):
        return EXIT_RECOVERY_FAILED

    if tools:
        summary = RunSummary(cfg.log.log_dir / SUMMARY_FILE)
        plugins = PluginResolver(manager.manager_dir, summary=summary, trace=manager.trace)
        if not check_plugins(plugins, tools):
            return EXIT_PLUGIN_FAILED

    log_kv(
        logger,
        logging.INFO,
        "Manager ready",
        manager=params.get_param(MGR_PARAM_MGR_NAME),
        work_dir=params.get_param(MGR_PARAM_WORK_DIR),
        params=len(params),
    )
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    cfg = _apply_args(load_all(), args)
    init_logging(cfg.log, trace=cfg.manager.trace)

    if args.disable:
        return EXIT_OK if disable_manager_locally(cfg.manager.local_params_path) else EXIT_SETTINGS_FAILED

    tools: List[str] = list(args.check_plugins)
    return run(cfg, tools)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
