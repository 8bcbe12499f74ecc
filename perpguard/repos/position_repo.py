"""Position repository — SQLite CRUD for the positions table.

Every query opens a fresh connection; nothing is cached between cycles.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Optional

from perpguard.models.ledger import Position, PositionStatus
from perpguard.repos.db import get_connection


_UPDATABLE_COLUMNS = frozenset({
    "status",
    "entry_amount",
    "current_stop_loss",
    "current_take_profit",
    "exit_price",
    "exit_amount",
    "exit_order_id",
    "exit_reason",
    "realized_pnl",
    "closed_at",
})


def _row_to_position(row: sqlite3.Row) -> Position:
    data = dict(row)
    data["status"] = PositionStatus(data["status"])
    return Position(**data)


class PositionRepo:
    """Data access layer for position records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def create_position(
        self,
        symbol: str,
        entry_price: float,
        entry_amount: float,
        entry_leverage: int,
        entry_order_id: Optional[str] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        opened_at: Optional[str] = None,
    ) -> int:
        """Insert a new OPEN position and return its ``id``.

        Raises ``sqlite3.IntegrityError`` if the symbol already has an
        OPEN position.
        """
        now = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO positions
                    (symbol, status, entry_price, entry_amount, entry_leverage,
                     entry_order_id, current_stop_loss, current_take_profit,
                     opened_at, updated_at)
                VALUES (?, 'OPEN', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    symbol, entry_price, entry_amount, entry_leverage,
                    entry_order_id, stop_loss, take_profit,
                    opened_at or now, now,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def update_position(self, position_id: int, **fields) -> None:
        """Update mutable position fields (amount, levels, exit data)."""
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(
                f"Cannot update position column(s): {', '.join(sorted(unknown))}"
            )
        if not fields:
            return
        if "status" in fields:
            fields["status"] = PositionStatus(fields["status"]).value
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()

        assignments = ", ".join(f"{col} = ?" for col in fields)
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                f"UPDATE positions SET {assignments} WHERE id = ?",
                (*fields.values(), position_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_position(self, position_id: int) -> Optional[Position]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ?", (position_id,)
            ).fetchone()
            return _row_to_position(row) if row else None
        finally:
            conn.close()

    def get_open_position(self, symbol: str) -> Optional[Position]:
        """Return the OPEN position for *symbol*, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM positions WHERE symbol = ? AND status = 'OPEN'",
                (symbol,),
            ).fetchone()
            return _row_to_position(row) if row else None
        finally:
            conn.close()

    def list_open_positions(self) -> list[Position]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM positions WHERE status = 'OPEN' ORDER BY id"
            ).fetchall()
            return [_row_to_position(row) for row in rows]
        finally:
            conn.close()

    def list_closed_positions(self) -> list[Position]:
        """All CLOSED positions ordered by close time, oldest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM positions
                WHERE status = 'CLOSED'
                ORDER BY closed_at ASC, id ASC
                """
            ).fetchall()
            return [_row_to_position(row) for row in rows]
        finally:
            conn.close()

    def list_closed_since(self, since: datetime) -> list[Position]:
        """CLOSED positions whose ``closed_at`` is at or after *since*."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM positions
                WHERE status = 'CLOSED' AND closed_at >= ?
                ORDER BY closed_at ASC, id ASC
                """,
                (since.astimezone(timezone.utc).isoformat(),),
            ).fetchall()
            return [_row_to_position(row) for row in rows]
        finally:
            conn.close()
