"""Internal API routers — /positions, /trades, /cycle/last endpoints.

Read-only views over the ledger and the engine's last cycle report.
Dependencies are injected at startup via ``configure_routers``.
"""

import dataclasses
import logging
from typing import Optional

from fastapi import APIRouter, Query

logger = logging.getLogger("perpguard")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_trade_repo = None     # Set via configure_routers()
_position_repo = None  # Set via configure_routers()
_engine = None         # Set via configure_routers()


def configure_routers(trade_repo=None, position_repo=None, engine=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
        position_repo: A ``PositionRepo`` instance (or duck-type for tests).
        engine: The ``TradingEngine`` whose last cycle is reported.
    """
    global _trade_repo, _position_repo, _engine  # noqa: PLW0603
    _trade_repo = trade_repo
    _position_repo = position_repo
    _engine = engine


def _serialise(record) -> dict:
    data = dataclasses.asdict(record)
    for key, value in data.items():
        if hasattr(value, "value"):
            data[key] = value.value
    return data


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/positions")
async def get_positions():
    """Return open positions from the ledger with their protection levels."""
    if _position_repo is None:
        return {"positions": []}
    positions = _position_repo.list_open_positions()
    return {
        "positions": [
            {**_serialise(p), "notional": p.notional, "margin": p.margin}
            for p in positions
        ]
    }


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    symbol: Optional[str] = Query(default=None),
):
    """Return recent trades, newest first."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    trades = _trade_repo.list_trades(limit=limit, symbol=symbol, status_filter=status)
    return {"trades": [_serialise(t) for t in trades], "total": len(trades)}


@router.get("/cycle/last")
async def get_last_cycle():
    """Return the report of the most recent decision cycle."""
    if _engine is None or _engine.last_report is None:
        return {"cycle": None}
    return {"cycle": _engine.last_report.to_dict()}
