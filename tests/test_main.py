from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from analysismgr import main as main_module
from analysismgr.config import AppConfig, HttpCfg, LogCfg, ManagerCfg, RetryCfg
from analysismgr.params import ConfigStore
from analysismgr.settings import SettingsResult, load_local_params


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    monkeypatch.setattr(main_module, "init_logging", lambda *args, **kwargs: None)


def _config(manager_dir: Path, *, offline: bool = True) -> AppConfig:
    return AppConfig(
        manager=ManagerCfg(
            manager_dir=manager_dir,
            local_params_file="AnalysisManager.env",
            offline=offline,
            trace=False,
            developer_hosts=(),
            maintenance_window=None,
        ),
        retry=RetryCfg(service_attempts=2, service_holdoff=0, delete_attempts=3, cleanup_holdoff=0),
        http=HttpCfg(timeout=1.0, retry_total=0, backoff_factor=0),
        log=LogCfg(level="INFO", json=False, log_dir=manager_dir / "logs", rotate_bytes=1024, backup_count=1),
    )


def _offline_manager(tmp_path: Path, cleanup_mode: str = "2") -> Path:
    manager_dir = tmp_path / "manager"
    queue = tmp_path / "queue"
    local_work = tmp_path / "work"
    for path in (manager_dir, queue, local_work):
        path.mkdir()
    (manager_dir / "AnalysisManager.env").write_text(
        "MgrName=Pub-12\nMgrActive_Local=True\nUsingDefaults=False\n",
        encoding="utf-8",
    )
    settings = {
        "LocalTaskQueuePath": str(queue),
        "LocalWorkDirPath": str(local_work),
        "ManagerErrorCleanupMode": cleanup_mode,
    }
    (manager_dir / "ManagerSettingsLocal.yaml").write_text(yaml.safe_dump({"settings": settings}), encoding="utf-8")
    return manager_dir


def test_offline_startup_succeeds(tmp_path):
    manager_dir = _offline_manager(tmp_path)

    assert main_module.run(_config(manager_dir)) == main_module.EXIT_OK
    assert (tmp_path / "work" / "Pub-12").is_dir()


def test_missing_local_params_file(tmp_path):
    assert main_module.run(_config(tmp_path)) == main_module.EXIT_SETTINGS_FAILED


def test_prior_crash_without_cleanup_blocks_startup(tmp_path):
    manager_dir = _offline_manager(tmp_path, cleanup_mode="0")
    (manager_dir / "flagFile.txt").write_text("2024-01-01 00:00:00\n", encoding="utf-8")

    assert main_module.run(_config(manager_dir)) == main_module.EXIT_RECOVERY_FAILED


def test_prior_crash_is_cleaned_up(tmp_path):
    manager_dir = _offline_manager(tmp_path, cleanup_mode="2")
    (manager_dir / "flagFile.txt").write_text("2024-01-01 00:00:00\n", encoding="utf-8")
    work_dir = tmp_path / "work" / "Pub-12"
    work_dir.mkdir()
    (work_dir / "leftover.mzML").write_text("x", encoding="utf-8")

    assert main_module.run(_config(manager_dir)) == main_module.EXIT_OK
    assert not (manager_dir / "flagFile.txt").exists()
    assert list(work_dir.iterdir()) == []


def test_plugin_check_failure_is_reported(tmp_path):
    manager_dir = _offline_manager(tmp_path)
    cfg = _config(manager_dir)

    assert main_module.run(cfg, ["MSGFPlus"]) == main_module.EXIT_PLUGIN_FAILED
    summary = (cfg.log.log_dir / main_module.SUMMARY_FILE).read_text(encoding="utf-8")
    assert "Unable to load Resourcer for MSGFPlus" in summary


def test_deactivated_manager_exits_cleanly(tmp_path):
    manager_dir = _offline_manager(tmp_path)
    (manager_dir / "AnalysisManager.env").write_text("MgrName=Pub-12\nMgrActive_Local=False\n", encoding="utf-8")

    assert main_module.run(_config(manager_dir, offline=False)) == main_module.EXIT_OK


def test_main_disable_flag(tmp_path, monkeypatch):
    manager_dir = _offline_manager(tmp_path)
    monkeypatch.setattr(main_module, "load_all", lambda: _config(tmp_path / "elsewhere"))

    assert main_module.main(["--disable", "--dir", str(manager_dir)]) == main_module.EXIT_OK
    assert load_local_params(manager_dir / "AnalysisManager.env")["MgrActive_Local"] == "False"


def test_apply_args_overrides_config(tmp_path):
    cfg = _config(tmp_path, offline=False)
    args = main_module._parse_args(["--offline", "--trace", "--dir", str(tmp_path / "other")])

    updated = main_module._apply_args(cfg, args)

    assert updated.manager.offline is True
    assert updated.manager.trace is True
    assert updated.manager.manager_dir == tmp_path / "other"
    assert replace(updated, manager=cfg.manager) == cfg


def test_missing_work_dir_fails_recovery(tmp_path, monkeypatch):
    manager_dir = _offline_manager(tmp_path)
    (manager_dir / "flagFile.txt").write_text("crash", encoding="utf-8")

    def _resolve(self, local_params):
        return SettingsResult(ok=True, params=ConfigStore({"MgrName": "Pub-12", "MgrActive": "True"}))

    monkeypatch.setattr(main_module.SettingsResolver, "resolve", _resolve)
    monkeypatch.chdir(manager_dir)

    assert main_module.run(_config(manager_dir)) == main_module.EXIT_RECOVERY_FAILED
    assert (manager_dir / "AnalysisManager.env").exists()
    assert (manager_dir / "flagFile.txt").exists()
