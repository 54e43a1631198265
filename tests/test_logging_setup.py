from __future__ import annotations

import json
import logging

from analysismgr.logging_setup import JSONFormatter, KVFormatter, SecretsFilter, get_logger


def _record(message: str, *args, ctx=None) -> logging.LogRecord:
    record = logging.LogRecord("analysismgr.settings", logging.INFO, __file__, 1, message, args, None)
    if ctx is not None:
        record.ctx = ctx
    return record


def test_kv_formatter_appends_context():
    formatter = KVFormatter("%(levelname)s %(message)s")

    line = formatter.format(_record("Manager settings loaded", ctx={"mode": "offline", "count": 12}))

    assert line == "INFO Manager settings loaded | mode=offline count=12"


def test_json_formatter_includes_context():
    payload = json.loads(JSONFormatter().format(_record("Loaded %s", "ToolRunner", ctx={"tool": "MSGFPlus"})))

    assert payload["message"] == "Loaded ToolRunner"
    assert payload["tool"] == "MSGFPlus"
    assert payload["level"] == "INFO"


def test_secrets_filter_masks_environment_secrets(monkeypatch):
    monkeypatch.setenv("BROKER_PASSWORD", "hunter2")
    record = _record("connecting with %s", "user:hunter2@broker")

    assert SecretsFilter().filter(record) is True
    assert record.getMessage() == "connecting with user:***@broker"


def test_get_logger_namespaces_names():
    assert get_logger().name == "analysismgr"
    assert get_logger("cleanup").name == "analysismgr.cleanup"
    assert get_logger("analysismgr.plugins.loader").name == "analysismgr.plugins.loader"
