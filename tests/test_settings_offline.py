from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from analysismgr.settings import (
    LOCAL_MANAGER_SETTINGS_FILE,
    UNDEFINED_MANAGER_NAME,
    FailureKind,
    SettingsResolver,
    disable_manager_locally,
    load_local_params,
)


def _local_params(**extra: str) -> dict[str, str]:
    params = {"MgrName": "Pub-88-1", "MgrActive_Local": "True", "UsingDefaults": "False"}
    params.update(extra)
    return params


def _write_settings(manager_dir: Path, settings: dict) -> Path:
    manager_dir.mkdir(parents=True, exist_ok=True)
    path = manager_dir / LOCAL_MANAGER_SETTINGS_FILE
    path.write_text(yaml.safe_dump({"settings": settings}), encoding="utf-8")
    return path


def _layout(tmp_path: Path) -> tuple[Path, Path, Path]:
    manager_dir = tmp_path / "manager"
    queue = tmp_path / "queue"
    local_work = tmp_path / "work"
    queue.mkdir()
    local_work.mkdir()
    return manager_dir, queue, local_work


def test_offline_resolution_creates_missing_work_dir(tmp_path):
    manager_dir, queue, local_work = _layout(tmp_path)
    _write_settings(manager_dir, {"LocalTaskQueuePath": str(queue), "LocalWorkDirPath": str(local_work)})

    result = SettingsResolver(manager_dir, offline=True).resolve(_local_params())

    assert result.ok, result.message
    expected = local_work / "Pub-88-1"
    assert Path(result.params["WorkDir"]) == expected
    assert expected.is_dir()
    assert result.params["mgractive"] == "true"


def test_offline_work_dir_override_is_used(tmp_path):
    manager_dir, queue, local_work = _layout(tmp_path)
    custom = tmp_path / "custom"
    _write_settings(
        manager_dir,
        {"LocalTaskQueuePath": str(queue), "LocalWorkDirPath": str(local_work), "WorkDir": str(custom)},
    )

    result = SettingsResolver(manager_dir, offline=True).resolve(_local_params())

    assert result.ok
    assert result.params["workdir"] == str(custom)
    assert custom.is_dir()


@pytest.mark.parametrize("missing", ["LocalTaskQueuePath", "LocalWorkDirPath"])
def test_offline_missing_required_setting(tmp_path, missing):
    manager_dir, queue, local_work = _layout(tmp_path)
    settings = {"LocalTaskQueuePath": str(queue), "LocalWorkDirPath": str(local_work)}
    del settings[missing]
    _write_settings(manager_dir, settings)

    result = SettingsResolver(manager_dir, offline=True).resolve(_local_params())

    assert not result.ok
    assert result.kind is FailureKind.MISSING_REQUIRED_PARAMETER
    assert missing in result.message
    assert LOCAL_MANAGER_SETTINGS_FILE in result.message


def test_offline_missing_queue_dir_creates_nothing(tmp_path):
    manager_dir, _, local_work = _layout(tmp_path)
    missing_queue = tmp_path / "no-such-queue"
    _write_settings(
        manager_dir,
        {"LocalTaskQueuePath": str(missing_queue), "LocalWorkDirPath": str(local_work)},
    )

    result = SettingsResolver(manager_dir, offline=True).resolve(_local_params())

    assert not result.ok
    assert result.kind is FailureKind.DIRECTORY_VALIDATION_FAILURE
    assert not missing_queue.exists()
    assert not (local_work / "Pub-88-1").exists()


def test_offline_settings_file_missing_or_malformed(tmp_path):
    manager_dir = tmp_path / "manager"
    manager_dir.mkdir()
    resolver = SettingsResolver(manager_dir, offline=True)

    missing = resolver.resolve(_local_params())
    (manager_dir / LOCAL_MANAGER_SETTINGS_FILE).write_text("settings: [unclosed", encoding="utf-8")
    malformed = resolver.resolve(_local_params())
    (manager_dir / LOCAL_MANAGER_SETTINGS_FILE).write_text("- just\n- a list\n", encoding="utf-8")
    wrong_shape = resolver.resolve(_local_params())

    for result in (missing, malformed, wrong_shape):
        assert not result.ok
        assert result.kind is FailureKind.MALFORMED_LOCAL_SETTINGS_FILE


def test_flat_settings_document_is_accepted(tmp_path):
    manager_dir, queue, local_work = _layout(tmp_path)
    manager_dir.mkdir()
    (manager_dir / LOCAL_MANAGER_SETTINGS_FILE).write_text(
        yaml.safe_dump({"LocalTaskQueuePath": str(queue), "LocalWorkDirPath": str(local_work), "DebugLevel": 2}),
        encoding="utf-8",
    )

    result = SettingsResolver(manager_dir, offline=True).resolve(_local_params())

    assert result.ok
    assert result.params.get_int("debuglevel") == 2


def test_template_defaults_fail_fast(tmp_path):
    result = SettingsResolver(tmp_path, offline=True).resolve(_local_params(UsingDefaults="True"))

    assert not result.ok
    assert result.kind is FailureKind.MISSING_REQUIRED_PARAMETER
    assert "UsingDefaults" in result.message


def test_blank_manager_name_fails(tmp_path):
    result = SettingsResolver(tmp_path, offline=True).resolve(_local_params(MgrName="  "))

    assert result.kind is FailureKind.MISSING_REQUIRED_PARAMETER
    assert "MgrName" in result.message


def test_computer_name_token_is_replaced(tmp_path):
    manager_dir, queue, local_work = _layout(tmp_path)
    _write_settings(manager_dir, {"LocalTaskQueuePath": str(queue), "LocalWorkDirPath": str(local_work)})

    resolver = SettingsResolver(manager_dir, offline=True, host_name="Proto-7")
    result = resolver.resolve(_local_params(MgrName="$ComputerName$_Analysis"))

    assert result.ok
    assert result.params["MgrName"] == "Proto-7_Analysis"


def test_load_local_params_applies_defaults(tmp_path):
    path = tmp_path / "AnalysisManager.env"
    path.write_text("MgrCnfgDbConnectStr=http://control.local/api\n", encoding="utf-8")

    params = load_local_params(path)

    assert params == {
        "MgrCnfgDbConnectStr": "http://control.local/api",
        "MgrActive_Local": "False",
        "UsingDefaults": "False",
        "MgrName": UNDEFINED_MANAGER_NAME,
    }
    assert load_local_params(tmp_path / "missing.env") is None


def test_disable_manager_locally_rewrites_flag(tmp_path):
    path = tmp_path / "AnalysisManager.env"
    path.write_text("MgrName=Pub-88-1\nMgrActive_Local=True\n", encoding="utf-8")

    assert disable_manager_locally(path) is True

    params = load_local_params(path)
    assert params["MgrActive_Local"] == "False"
    assert params["MgrName"] == "Pub-88-1"


def test_disable_manager_locally_without_flag(tmp_path):
    path = tmp_path / "AnalysisManager.env"
    path.write_text("MgrName=Pub-88-1\n", encoding="utf-8")

    assert disable_manager_locally(path) is False
    assert disable_manager_locally(tmp_path / "missing.env") is False
