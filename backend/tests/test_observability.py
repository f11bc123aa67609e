"""Tests ensuring observability and logging wiring is safe by default."""
from __future__ import annotations

import importlib
import logging

from app.core.context import request_id_ctx_var, session_attempt_ctx_var
from app.core.logging import RequestContextFilter


def test_app_import_succeeds_when_opik_is_disabled(monkeypatch) -> None:
    monkeypatch.setenv("OPIK_ENABLED", "false")
    monkeypatch.delenv("OPIK_API_KEY", raising=False)

    import app.core.config as core_config
    import app.observability.client as client_module
    import app.main as main_module

    importlib.reload(core_config)
    importlib.reload(client_module)
    reloaded_app = importlib.reload(main_module)

    assert hasattr(reloaded_app, "app")
    assert client_module.init_opik() is None


def test_opik_init_skipped_without_api_key(monkeypatch) -> None:
    import app.observability.client as client_module

    monkeypatch.setattr(client_module.settings, "opik_enabled", True)
    monkeypatch.setattr(client_module.settings, "opik_api_key", None)
    client_module.reset_opik_client()

    try:
        assert client_module.get_opik_client() is None
    finally:
        client_module.reset_opik_client()


def test_request_context_filter_stamps_records() -> None:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "hello", None, None)
    request_token = request_id_ctx_var.set("req-9")
    attempt_token = session_attempt_ctx_var.set(3)
    try:
        assert RequestContextFilter().filter(record)
    finally:
        session_attempt_ctx_var.reset(attempt_token)
        request_id_ctx_var.reset(request_token)

    assert record.request_id == "req-9"
    assert record.attempt == "#3"

    idle = logging.LogRecord("app.test", logging.INFO, __file__, 1, "hello", None, None)
    RequestContextFilter().filter(idle)
    assert (idle.request_id, idle.attempt) == ("-", "-")
