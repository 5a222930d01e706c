from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

import pytest

from orbbot.adapters.dry_run_game import DryRunGameGateway
from orbbot.config import Settings
from orbbot.services.ledger_store import LedgerStore


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)
    for key in ("HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_state_paths_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "ledger.sqlite"))
    monkeypatch.setenv("PROCESS_STATE_PATH", str(tmp_path / "process_state.json"))
    monkeypatch.setenv("ORBBOT_LOCK_DIR", str(tmp_path / "locks"))


@pytest.fixture
def ledger(tmp_path: Path) -> LedgerStore:
    store = LedgerStore(db_path=str(tmp_path / "ledger.sqlite"))
    yield store
    store.close()


@pytest.fixture
def sim() -> DryRunGameGateway:
    return DryRunGameGateway(wallet_balance=Decimal("1.0"), risk_parameter=Decimal("250"))


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        CHECK_ROUND_INTERVAL_MS=0,
        ERROR_BACKOFF_MS=0,
        CHECKPOINT_BATCH_DELAY_MS=0,
        SUBMIT_BASE_DELAY_MS=0,
        SUBMIT_MAX_DELAY_MS=0,
    )
