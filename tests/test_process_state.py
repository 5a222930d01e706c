from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

from orbbot.domain.models import SizingState
from orbbot.services.process_state import ProcessStateStore


def test_missing_file_means_unsized(tmp_path: Path) -> None:
    store = ProcessStateStore(str(tmp_path / "absent.json"))

    state = store.load()

    assert state == SizingState()
    assert state.is_sized is False


def test_save_then_load(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.json"
    store = ProcessStateStore(str(path))
    saved = SizingState(
        sizing_risk_parameter=Decimal("312.5"),
        sizing_timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        sizing_cycle_id=4411,
    )

    store.save(saved)

    assert store.load() == saved
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["sizing_risk_parameter"] == "312.5"
    assert payload["version"] == 1
    assert not list(path.parent.glob("*.tmp"))


def test_clear_resets_sizing(tmp_path: Path) -> None:
    store = ProcessStateStore(str(tmp_path / "state.json"))
    store.save(SizingState(sizing_risk_parameter=Decimal("250"), sizing_cycle_id=3))

    store.clear()

    assert store.load().is_sized is False


def test_corrupt_file_is_treated_as_unsized(tmp_path: Path, caplog) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    assert ProcessStateStore(str(path)).load() == SizingState()
    assert "process_state_unreadable" in caplog.text

