from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from orbbot.domain.ledger import (
    InFlightDeployment,
    LedgerEvent,
    LedgerEventKind,
    LedgerStatus,
    LedgerTotals,
    aggregate_totals,
    ensure_utc,
    is_stale,
)
from orbbot.domain.models import PriceQuote
from orbbot.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_ledger_schema,
)

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _parse_db_datetime(raw: object) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _optional_decimal(raw: object) -> Decimal | None:
    if raw is None:
        return None
    return Decimal(str(raw))


@dataclass(frozen=True)
class AppendResult:
    attempted: int
    inserted: int
    ignored: int


@dataclass(frozen=True)
class BalanceSnapshot:
    timestamp: datetime
    wallet_base: Decimal
    wallet_reward: Decimal
    fund_balance: Decimal
    claimable_base: Decimal
    claimable_reward: Decimal
    staked_reward: Decimal

    @property
    def base_value(self) -> Decimal:
        return self.wallet_base + self.fund_balance


@dataclass(frozen=True)
class RoundRecord:
    cycle_id: int
    timestamp: datetime
    risk_parameter: Decimal
    deployed_amount: Decimal
    squares: int
    fund_balance_before: Decimal
    fund_balance_after: Decimal
    competition_total: Decimal | None = None
    expected_value: Decimal | None = None


@dataclass(frozen=True)
class DailySummary:
    day: date
    deploy_count: int
    spent_on_cycles: Decimal
    claimed_base: Decimal
    claimed_reward: Decimal
    swapped_base: Decimal
    network_fees: Decimal


@dataclass(frozen=True)
class FeeReview:
    actual_total: Decimal
    estimated_total: Decimal
    difference: Decimal
    events_with_estimates: int
    needs_review: bool


class LedgerStore:
    """Append-only ledger of financial events plus the in-flight overlay.

    One process writes; readers (reports, a dashboard) open their own connections and rely
    on WAL isolation. Rows in ``ledger_events`` are never updated or deleted here.
    """

    def __init__(self, db_path: str = "orbbot_ledger.db") -> None:
        self.db_path = db_path
        self.db_path_abs = (
            db_path if db_path == ":memory:" else str(Path(db_path).expanduser().resolve())
        )
        self._transaction_conn: sqlite3.Connection | None = None
        self._shared_conn: sqlite3.Connection | None = None
        with self._connect() as conn:
            ensure_ledger_schema(conn)
        logger.info("ledger_store_startup", extra={"extra": {"db_path": self.db_path_abs}})

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        tx_conn = self._transaction_conn
        if tx_conn is not None:
            yield tx_conn
            return
        if self.db_path == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = create_sqlite_connection(self.db_path)
            yield self._shared_conn
            self._shared_conn.commit()
            return
        conn = create_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        tx_conn = self._transaction_conn
        if tx_conn is not None:
            yield tx_conn
            return
        if self.db_path == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = create_sqlite_connection(self.db_path)
            conn = self._shared_conn
        else:
            conn = create_sqlite_connection(self.db_path)
        conn.execute("BEGIN IMMEDIATE")
        self._transaction_conn = conn
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._transaction_conn = None
            if conn is not self._shared_conn:
                conn.close()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ledger events

    def append(self, event: LedgerEvent) -> bool:
        return self.append_many([event]).inserted == 1

    def append_many(self, events: Sequence[LedgerEvent]) -> AppendResult:
        inserted = 0
        with self.transaction() as conn:
            for event in events:
                inserted += self._insert_event(conn, event)
        attempted = len(events)
        return AppendResult(attempted=attempted, inserted=inserted, ignored=attempted - inserted)

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, event: LedgerEvent) -> int:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO ledger_events(
                event_id, ts, kind, signature, cycle_id, base_amount, reward_token_amount,
                status, notes, reward_token_price_usd, network_fee, protocol_fee, estimated_fee
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                ensure_utc(event.timestamp).isoformat(),
                event.kind.value,
                event.signature,
                event.cycle_id,
                str(event.base_amount),
                str(event.reward_token_amount),
                event.status.value,
                event.notes,
                str(event.reward_token_price_usd)
                if event.reward_token_price_usd is not None
                else None,
                str(event.network_fee),
                str(event.protocol_fee),
                str(event.estimated_fee) if event.estimated_fee is not None else None,
            ),
        )
        return int(bool(cur.rowcount))

    def load_events(
        self,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        kinds: Iterable[LedgerEventKind] | None = None,
    ) -> list[LedgerEvent]:
        query = "SELECT * FROM ledger_events WHERE 1=1"
        params: list[object] = []
        if time_min is not None:
            query += " AND ts >= ?"
            params.append(ensure_utc(time_min).isoformat())
        if time_max is not None:
            query += " AND ts <= ?"
            params.append(ensure_utc(time_max).isoformat())
        if kinds is not None:
            kind_values = [LedgerEventKind(kind).value for kind in kinds]
            if not kind_values:
                return []
            query += f" AND kind IN ({', '.join('?' for _ in kind_values)})"
            params.extend(kind_values)
        query += " ORDER BY ts, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> LedgerEvent:
        return LedgerEvent(
            event_id=str(row["event_id"]),
            timestamp=_parse_db_datetime(row["ts"]),
            kind=LedgerEventKind(str(row["kind"])),
            signature=row["signature"],
            cycle_id=int(row["cycle_id"]) if row["cycle_id"] is not None else None,
            base_amount=Decimal(str(row["base_amount"])),
            reward_token_amount=Decimal(str(row["reward_token_amount"])),
            status=LedgerStatus(str(row["status"])),
            notes=str(row["notes"] or ""),
            reward_token_price_usd=_optional_decimal(row["reward_token_price_usd"]),
            network_fee=Decimal(str(row["network_fee"])),
            protocol_fee=Decimal(str(row["protocol_fee"])),
            estimated_fee=_optional_decimal(row["estimated_fee"]),
        )

    def aggregate_totals(
        self, time_min: datetime | None = None, time_max: datetime | None = None
    ) -> LedgerTotals:
        return aggregate_totals(self.load_events(time_min=time_min, time_max=time_max))

    # baseline

    def get_baseline(self) -> LedgerEvent | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_events WHERE kind = ? ORDER BY ts LIMIT 1",
                (LedgerEventKind.BASELINE.value,),
            ).fetchone()
        return self._row_to_event(row) if row is not None else None

    def set_baseline(
        self, amount: Decimal, *, now: datetime, notes: str = ""
    ) -> tuple[LedgerEvent, bool]:
        """Record the starting portfolio value once; later calls return the stored one."""
        if amount <= 0:
            raise ValueError("baseline amount must be > 0")
        candidate = LedgerEvent(
            kind=LedgerEventKind.BASELINE,
            timestamp=now,
            base_amount=amount,
            notes=notes or "starting portfolio value",
        )
        with self.transaction() as conn:
            created = bool(self._insert_event(conn, candidate))
        stored = self.get_baseline()
        if stored is None:
            raise RuntimeError("baseline missing after insert")
        if created:
            logger.info("baseline_recorded", extra={"extra": {"amount": str(amount)}})
        else:
            logger.info(
                "baseline_already_set",
                extra={"extra": {"stored": str(stored.base_amount), "ignored": str(amount)}},
            )
        return stored, created

    # in-flight tracker

    def record_in_flight(
        self, cycle_id: int, amount: Decimal, *, now: datetime
    ) -> InFlightDeployment:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO in_flight_deployments(cycle_id, base_amount, ts, resolved)
                VALUES (?, ?, ?, 0)
                """,
                (int(cycle_id), str(amount), ensure_utc(now).isoformat()),
            )
        return InFlightDeployment(cycle_id=int(cycle_id), base_amount=amount, timestamp=now)

    def list_in_flight(self, *, include_resolved: bool = False) -> list[InFlightDeployment]:
        query = "SELECT * FROM in_flight_deployments"
        if not include_resolved:
            query += " WHERE resolved = 0"
        query += " ORDER BY cycle_id, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_in_flight(row) for row in rows]

    def in_flight_total(self) -> tuple[Decimal, int]:
        entries = self.list_in_flight()
        return sum((entry.base_amount for entry in entries), _ZERO), len(entries)

    def resolve_in_flight(
        self, cycle_ids: Iterable[int], *, now: datetime, reason: str = "claimed"
    ) -> int:
        ids = sorted({int(cycle_id) for cycle_id in cycle_ids})
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE in_flight_deployments
                SET resolved = 1, resolved_at = ?, resolution = ?
                WHERE resolved = 0 AND cycle_id IN ({placeholders})
                """,
                (ensure_utc(now).isoformat(), reason, *ids),
            )
        return int(cur.rowcount)

    def resolve_all_in_flight(self, *, now: datetime, reason: str = "claimed") -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE in_flight_deployments
                SET resolved = 1, resolved_at = ?, resolution = ?
                WHERE resolved = 0
                """,
                (ensure_utc(now).isoformat(), reason),
            )
        resolved = int(cur.rowcount)
        if resolved:
            logger.debug(
                "in_flight_resolved", extra={"extra": {"count": resolved, "reason": reason}}
            )
        return resolved

    def sweep_stale(
        self,
        *,
        now: datetime,
        max_age_ms: int,
        current_cycle_id: int | None = None,
        max_cycle_distance: int | None = None,
    ) -> int:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM in_flight_deployments WHERE resolved = 0").fetchall()
            stale_ids = [
                int(row["id"])
                for row in rows
                if is_stale(
                    self._row_to_in_flight(row),
                    now=now,
                    max_age_ms=max_age_ms,
                    current_cycle_id=current_cycle_id,
                    max_cycle_distance=max_cycle_distance,
                )
            ]
            if not stale_ids:
                return 0
            placeholders = ", ".join("?" for _ in stale_ids)
            conn.execute(
                f"""
                UPDATE in_flight_deployments
                SET resolved = 1, resolved_at = ?, resolution = 'stale'
                WHERE resolved = 0 AND id IN ({placeholders})
                """,
                (ensure_utc(now).isoformat(), *stale_ids),
            )
        logger.debug("in_flight_swept", extra={"extra": {"count": len(stale_ids)}})
        return len(stale_ids)

    @staticmethod
    def _row_to_in_flight(row: sqlite3.Row) -> InFlightDeployment:
        return InFlightDeployment(
            cycle_id=int(row["cycle_id"]),
            base_amount=Decimal(str(row["base_amount"])),
            timestamp=_parse_db_datetime(row["ts"]),
            resolved=bool(row["resolved"]),
            resolved_at=_parse_db_datetime(row["resolved_at"]) if row["resolved_at"] else None,
            resolution=row["resolution"],
        )

    # snapshots, prices, rounds

    def record_balance_snapshot(self, snapshot: BalanceSnapshot) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO balance_snapshots(
                    ts, wallet_base, wallet_reward, fund_balance,
                    claimable_base, claimable_reward, staked_reward
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ensure_utc(snapshot.timestamp).isoformat(),
                    str(snapshot.wallet_base),
                    str(snapshot.wallet_reward),
                    str(snapshot.fund_balance),
                    str(snapshot.claimable_base),
                    str(snapshot.claimable_reward),
                    str(snapshot.staked_reward),
                ),
            )

    def earliest_balance_snapshot(self) -> BalanceSnapshot | None:
        return self._one_snapshot("ASC")

    def latest_balance_snapshot(self) -> BalanceSnapshot | None:
        return self._one_snapshot("DESC")

    def _one_snapshot(self, direction: str) -> BalanceSnapshot | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM balance_snapshots ORDER BY ts {direction}, id {direction} LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return BalanceSnapshot(
            timestamp=_parse_db_datetime(row["ts"]),
            wallet_base=Decimal(str(row["wallet_base"])),
            wallet_reward=Decimal(str(row["wallet_reward"])),
            fund_balance=Decimal(str(row["fund_balance"])),
            claimable_base=Decimal(str(row["claimable_base"])),
            claimable_reward=Decimal(str(row["claimable_reward"])),
            staked_reward=Decimal(str(row["staked_reward"])),
        )

    def record_price(self, quote: PriceQuote, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO price_history(ts, price_in_base, price_in_quote) VALUES (?, ?, ?)",
                (ensure_utc(now).isoformat(), str(quote.price_in_base), str(quote.price_in_quote)),
            )

    def latest_price(self) -> PriceQuote | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM price_history ORDER BY ts DESC, id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return PriceQuote(
            price_in_base=Decimal(str(row["price_in_base"])),
            price_in_quote=Decimal(str(row["price_in_quote"])),
        )

    def record_round(self, record: RoundRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rounds(
                    cycle_id, ts, risk_parameter, deployed_amount, squares,
                    fund_balance_before, fund_balance_after, competition_total, expected_value
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cycle_id) DO UPDATE SET
                    ts = excluded.ts,
                    risk_parameter = excluded.risk_parameter,
                    deployed_amount = excluded.deployed_amount,
                    squares = excluded.squares,
                    fund_balance_before = excluded.fund_balance_before,
                    fund_balance_after = excluded.fund_balance_after,
                    competition_total = excluded.competition_total,
                    expected_value = excluded.expected_value
                """,
                (
                    int(record.cycle_id),
                    ensure_utc(record.timestamp).isoformat(),
                    str(record.risk_parameter),
                    str(record.deployed_amount),
                    int(record.squares),
                    str(record.fund_balance_before),
                    str(record.fund_balance_after),
                    str(record.competition_total) if record.competition_total is not None else None,
                    str(record.expected_value) if record.expected_value is not None else None,
                ),
            )

    def load_rounds(self, limit: int = 50) -> list[RoundRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM rounds ORDER BY cycle_id DESC LIMIT ?", (max(0, int(limit)),)
            ).fetchall()
        return [
            RoundRecord(
                cycle_id=int(row["cycle_id"]),
                timestamp=_parse_db_datetime(row["ts"]),
                risk_parameter=Decimal(str(row["risk_parameter"])),
                deployed_amount=Decimal(str(row["deployed_amount"])),
                squares=int(row["squares"]),
                fund_balance_before=Decimal(str(row["fund_balance_before"])),
                fund_balance_after=Decimal(str(row["fund_balance_after"])),
                competition_total=_optional_decimal(row["competition_total"]),
                expected_value=_optional_decimal(row["expected_value"]),
            )
            for row in rows
        ]

    # reporting

    def daily_summaries(self, days: int, *, now: datetime) -> list[DailySummary]:
        now_utc = ensure_utc(now)
        start = datetime.combine(
            (now_utc - timedelta(days=max(1, days) - 1)).date(), datetime.min.time(), tzinfo=UTC
        )
        by_day: dict[date, list[LedgerEvent]] = {}
        for event in self.load_events(time_min=start, time_max=now_utc):
            by_day.setdefault(ensure_utc(event.timestamp).date(), []).append(event)
        summaries: list[DailySummary] = []
        for day in sorted(by_day):
            totals = aggregate_totals(by_day[day])
            summaries.append(
                DailySummary(
                    day=day,
                    deploy_count=totals.deploy_count,
                    spent_on_cycles=totals.spent_on_cycles,
                    claimed_base=totals.claimed_base,
                    claimed_reward=totals.claimed_reward,
                    swapped_base=totals.swapped_base,
                    network_fees=totals.network_fees,
                )
            )
        return summaries

    def fee_review(self, *, tolerance: Decimal) -> FeeReview:
        """Compare recorded fees with the per-submit estimates; flag, never reconcile."""
        actual = _ZERO
        estimated = _ZERO
        with_estimates = 0
        for event in self.load_events():
            if event.estimated_fee is None:
                continue
            with_estimates += 1
            actual += event.network_fee
            estimated += event.estimated_fee
        difference = actual - estimated
        needs_review = abs(difference) > tolerance
        if needs_review:
            logger.warning(
                "fee_discrepancy_flagged",
                extra={
                    "extra": {
                        "actual_total": str(actual),
                        "estimated_total": str(estimated),
                        "difference": str(difference),
                        "events": with_estimates,
                    }
                },
            )
        return FeeReview(
            actual_total=actual,
            estimated_total=estimated,
            difference=difference,
            events_with_estimates=with_estimates,
            needs_review=needs_review,
        )


def append_or_log(ledger: LedgerStore, event: LedgerEvent, *, operation: str) -> bool:
    """Append ``event``; a failure is logged loudly and never undoes the remote operation."""
    try:
        return ledger.append(event)
    except Exception:  # noqa: BLE001
        logger.exception(
            "ledger_write_failed",
            extra={
                "extra": {
                    "operation": operation,
                    "kind": event.kind.value,
                    "base_amount": str(event.base_amount),
                    "reward_token_amount": str(event.reward_token_amount),
                    "signature": event.signature,
                    "cycle_id": event.cycle_id,
                }
            },
        )
        return False
