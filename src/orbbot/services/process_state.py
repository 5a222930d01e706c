from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from orbbot.domain.ledger import ensure_utc
from orbbot.domain.models import SizingState

logger = logging.getLogger(__name__)

_STATE_VERSION = 1


class ProcessStateStore:
    """Durable sizing memory kept apart from the ledger database.

    Resetting the ledger must not forget what the live fund was sized for, and clearing
    this file must not touch the ledger.
    """

    def __init__(self, path: str = "orbbot_process_state.json") -> None:
        self.path = Path(path).expanduser()

    def load(self) -> SizingState:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SizingState()
        try:
            payload = json.loads(raw)
            return self._from_payload(payload)
        except (ValueError, TypeError, InvalidOperation, KeyError) as exc:
            logger.warning(
                "process_state_unreadable",
                extra={"extra": {"path": str(self.path), "error_type": type(exc).__name__}},
            )
            return SizingState()

    def save(self, state: SizingState) -> None:
        payload = {
            "version": _STATE_VERSION,
            "sizing_risk_parameter": str(state.sizing_risk_parameter),
            "sizing_timestamp": ensure_utc(state.sizing_timestamp).isoformat()
            if state.sizing_timestamp is not None
            else None,
            "sizing_cycle_id": state.sizing_cycle_id,
        }
        self._write_atomic(json.dumps(payload, sort_keys=True))
        logger.debug(
            "process_state_saved",
            extra={"extra": {"sizing_risk_parameter": payload["sizing_risk_parameter"]}},
        )

    def clear(self) -> None:
        self.save(SizingState())

    def _write_atomic(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(f"{self.path.suffix}.{os.getpid()}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)

    @staticmethod
    def _from_payload(payload: object) -> SizingState:
        if not isinstance(payload, dict):
            raise TypeError("process state must be a JSON object")
        raw_timestamp = payload.get("sizing_timestamp")
        raw_cycle = payload.get("sizing_cycle_id")
        return SizingState(
            sizing_risk_parameter=Decimal(str(payload.get("sizing_risk_parameter", "0"))),
            sizing_timestamp=ensure_utc(datetime.fromisoformat(raw_timestamp))
            if raw_timestamp
            else None,
            sizing_cycle_id=int(raw_cycle) if raw_cycle is not None else None,
        )
