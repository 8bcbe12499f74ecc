"""Trade repository — SQLite CRUD for the trades table."""

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from perpguard.models.ledger import Trade, TradeStatus
from perpguard.repos.db import get_connection


_UPDATABLE_COLUMNS = frozenset({
    "status",
    "exchange_order_id",
    "executed_price",
    "executed_amount",
    "executed_at",
    "error",
    "position_id",
})


def _row_to_trade(row: sqlite3.Row) -> Trade:
    data = dict(row)
    data["status"] = TradeStatus(data["status"])
    return Trade(**data)


class TradeRepo:
    """Data access layer for trade records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def create_trade(
        self,
        symbol: str,
        operation: str,
        pricing: Optional[float] = None,
        amount: Optional[float] = None,
        leverage: Optional[int] = None,
        percentage: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        chat: str = "",
        status: TradeStatus = TradeStatus.PENDING,
        error: Optional[str] = None,
    ) -> int:
        """Insert a new trade record and return its ``id``."""
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (symbol, operation, status, pricing, amount, leverage,
                     percentage, stop_loss, take_profit, error, chat,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    symbol, operation, TradeStatus(status).value, pricing,
                    amount, leverage, percentage, stop_loss, take_profit,
                    error, chat, now, now,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def update_trade(self, trade_id: int, **fields) -> None:
        """Update execution fields of a trade.

        Only status and execution columns may change; the requested
        parameters are immutable once written.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update trade column(s): {', '.join(sorted(unknown))}")
        if not fields:
            return
        if "status" in fields:
            fields["status"] = TradeStatus(fields["status"]).value
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()

        assignments = ", ".join(f"{col} = ?" for col in fields)
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                f"UPDATE trades SET {assignments} WHERE id = ?",
                (*fields.values(), trade_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trades WHERE id = ?", (trade_id,)
            ).fetchone()
            return _row_to_trade(row) if row else None
        finally:
            conn.close()

    def list_trades(
        self,
        limit: int = 50,
        symbol: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> list[Trade]:
        """Return the most recent trades, newest first."""
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if symbol:
                conditions.append("symbol = ?")
                params.append(symbol)
            if status_filter:
                conditions.append("status = ?")
                params.append(status_filter)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [_row_to_trade(row) for row in rows]
        finally:
            conn.close()
