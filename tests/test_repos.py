"""Tests for the SQLite ledger — schema, trade and position repositories."""

import sqlite3
from datetime import datetime, timezone

import pytest

from perpguard.models.ledger import PositionStatus, TradeStatus
from perpguard.repos.db import get_connection, init_db
from perpguard.repos.position_repo import PositionRepo
from perpguard.repos.trade_repo import TradeRepo


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "nested" / "ledger.db")
    init_db(path)
    return path


class TestInitDb:
    def test_creates_tables(self, db_path):
        conn = get_connection(db_path)
        try:
            names = {
                r["name"]
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        finally:
            conn.close()
        assert {"positions", "trades"} <= names

    def test_rerun_is_harmless(self, db_path):
        init_db(db_path)
        init_db(db_path)


class TestTradeRepo:
    def test_create_and_get(self, db_path):
        repo = TradeRepo(db_path)
        tid = repo.create_trade(
            "BTC/USDT", "Buy", pricing=50_000.0, amount=0.002, leverage=5,
            stop_loss=49_000.0, take_profit=52_000.0, chat="breakout",
        )
        trade = repo.get_trade(tid)
        assert trade.status is TradeStatus.PENDING
        assert trade.operation == "Buy"
        assert trade.leverage == 5
        assert trade.chat == "breakout"
        assert trade.created_at

    def test_update_fields(self, db_path):
        repo = TradeRepo(db_path)
        tid = repo.create_trade("BTC/USDT", "Sell", percentage=40.0)
        repo.update_trade(tid, status=TradeStatus.FILLED, executed_price=51_000.0, exchange_order_id="x1")
        trade = repo.get_trade(tid)
        assert trade.status is TradeStatus.FILLED
        assert trade.executed_price == pytest.approx(51_000.0)
        assert trade.exchange_order_id == "x1"
        assert trade.updated_at >= trade.created_at

    def test_update_rejects_unknown_column(self, db_path):
        repo = TradeRepo(db_path)
        tid = repo.create_trade("BTC/USDT", "Hold")
        with pytest.raises(ValueError, match="symbol"):
            repo.update_trade(tid, symbol="ETH/USDT")

    def test_invalid_operation_rejected_by_schema(self, db_path):
        with pytest.raises(sqlite3.IntegrityError):
            TradeRepo(db_path).create_trade("BTC/USDT", "Short")

    def test_list_newest_first_with_filters(self, db_path):
        repo = TradeRepo(db_path)
        a = repo.create_trade("BTC/USDT", "Hold")
        b = repo.create_trade("ETH/USDT", "Hold", status=TradeStatus.FAILED, error="bad")
        c = repo.create_trade("BTC/USDT", "Hold")
        assert [t.id for t in repo.list_trades()] == [c, b, a]
        assert [t.id for t in repo.list_trades(symbol="BTC/USDT")] == [c, a]
        assert [t.id for t in repo.list_trades(status_filter="FAILED")] == [b]
        assert len(repo.list_trades(limit=1)) == 1

    def test_missing_trade_is_none(self, db_path):
        assert TradeRepo(db_path).get_trade(999) is None


class TestPositionRepo:
    def test_create_open_position(self, db_path):
        repo = PositionRepo(db_path)
        pid = repo.create_position("BTC/USDT", 50_000.0, 0.002, 5, entry_order_id="o1", stop_loss=49_000.0)
        pos = repo.get_open_position("BTC/USDT")
        assert pos.id == pid
        assert pos.status is PositionStatus.OPEN
        assert pos.current_stop_loss == pytest.approx(49_000.0)
        assert pos.current_take_profit is None
        assert pos.notional == pytest.approx(100.0)
        assert pos.margin == pytest.approx(20.0)

    def test_one_open_position_per_symbol(self, db_path):
        repo = PositionRepo(db_path)
        repo.create_position("BTC/USDT", 50_000.0, 0.002, 5)
        with pytest.raises(sqlite3.IntegrityError):
            repo.create_position("BTC/USDT", 51_000.0, 0.001, 3)
        # another symbol is fine
        repo.create_position("ETH/USDT", 3_000.0, 0.1, 3)
        assert len(repo.list_open_positions()) == 2

    def test_reopen_after_close(self, db_path):
        repo = PositionRepo(db_path)
        pid = repo.create_position("BTC/USDT", 50_000.0, 0.002, 5)
        repo.update_position(pid, status=PositionStatus.CLOSED, closed_at="2025-01-01T00:00:00+00:00")
        repo.create_position("BTC/USDT", 51_000.0, 0.001, 3)
        assert repo.get_open_position("BTC/USDT").entry_price == pytest.approx(51_000.0)

    def test_update_rejects_unknown_column(self, db_path):
        repo = PositionRepo(db_path)
        pid = repo.create_position("BTC/USDT", 50_000.0, 0.002, 5)
        with pytest.raises(ValueError):
            repo.update_position(pid, entry_price=1.0)

    def test_closed_ordering_and_window(self, db_path):
        repo = PositionRepo(db_path)
        for symbol, closed_at, pnl in [
            ("BTC/USDT", "2025-01-03T10:00:00+00:00", 5.0),
            ("ETH/USDT", "2025-01-01T10:00:00+00:00", -2.0),
            ("SOL/USDT", "2025-01-02T10:00:00+00:00", 1.0),
        ]:
            pid = repo.create_position(symbol, 100.0, 1.0, 2)
            repo.update_position(
                pid, status=PositionStatus.CLOSED, closed_at=closed_at, realized_pnl=pnl
            )

        closed = repo.list_closed_positions()
        assert [p.symbol for p in closed] == ["ETH/USDT", "SOL/USDT", "BTC/USDT"]

        since = datetime(2025, 1, 2, tzinfo=timezone.utc)
        recent = repo.list_closed_since(since)
        assert [p.realized_pnl for p in recent] == [1.0, 5.0]
