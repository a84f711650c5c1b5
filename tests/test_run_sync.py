from __future__ import annotations

from unittest.mock import patch

import pytest

import run_sync


def test_log_level_is_case_insensitive(monkeypatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    assert run_sync.parse_args(["--log-level", "debug"]).log_level == "DEBUG"
    assert run_sync.parse_args([]).log_level == "INFO"


def test_unknown_log_level_flag_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        run_sync.parse_args(["--log-level", "chatty"])

    assert excinfo.value.code == 2


def test_unknown_log_level_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "chatty")

    with pytest.raises(SystemExit) as excinfo:
        run_sync.main([])

    assert excinfo.value.code == 2


def test_invalid_configuration_exits_non_zero(monkeypatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    with patch("run_sync.SyncConfig.from_env", side_effect=ValueError("bad FETCH_RETRIES")), patch(
        "run_sync.SyncOrchestrator"
    ) as orchestrator:
        assert run_sync.main([]) == 1

    orchestrator.assert_not_called()
