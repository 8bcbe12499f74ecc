"""PerpGuard — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
dry-run and live modes.
"""

import logging

from fastapi import FastAPI

from perpguard.api.routers import router

app = FastAPI(title="PerpGuard Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("perpguard")


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning(
            "LIVE TRADING MODE — Real money at risk! Starting in 5 seconds..."
        )
        return True
    return False


def build_engine(config, mode: str):
    """Wire gateway, advisor, profiler, executor and engine for *mode*.

    Returns ``(engine, trade_repo, position_repo)``.
    """
    from perpguard.advisor.base import StaticAdvisor
    from perpguard.advisor.http_advisor import HttpAdvisor
    from perpguard.broker.binance_client import BinanceFuturesClient
    from perpguard.broker.dry_run import DryRunGateway
    from perpguard.engine import TradingEngine
    from perpguard.execution.executor import ExecutionEngine
    from perpguard.models.instrument import parse_instruments
    from perpguard.repos.position_repo import PositionRepo
    from perpguard.repos.trade_repo import TradeRepo
    from perpguard.risk.account_profile import AccountRiskProfiler
    from perpguard.strategy.market_state import MarketSignalAggregator

    instruments = parse_instruments(config.trading_symbols)

    trade_repo = TradeRepo(config.db_path)
    position_repo = PositionRepo(config.db_path)

    gateway = BinanceFuturesClient(config)
    if mode != "live":
        gateway = DryRunGateway(
            gateway,
            maintenance_margin_rate=config.limits.maintenance_margin_rate,
            open_positions=position_repo.list_open_positions(),
        )

    if config.advisor_url:
        advisor = HttpAdvisor(config.advisor_url)
    else:
        logger.warning("ADVISOR_URL not set — every instrument will Hold.")
        advisor = StaticAdvisor()

    engine = TradingEngine(
        instruments=instruments,
        advisor=advisor,
        aggregator=MarketSignalAggregator(gateway),
        profiler=AccountRiskProfiler(gateway, position_repo, config.initial_capital),
        executor=ExecutionEngine(gateway, position_repo, trade_repo, limits=config.limits),
        trade_repo=trade_repo,
        cycle_timeout=config.cycle_timeout_seconds,
    )
    return engine, trade_repo, position_repo


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal
    import time

    from perpguard.api.routers import configure_routers
    from perpguard.config import load_config
    from perpguard.repos.db import init_db

    parser = argparse.ArgumentParser(description="PerpGuard futures trading agent")
    parser.add_argument(
        "--mode",
        choices=["dry-run", "live"],
        default=None,
        help="Trading mode (default: dry-run unless DRY_RUN=false)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single decision cycle and exit",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading loop without the API server",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    mode = args.mode or ("dry-run" if config.dry_run else "live")
    init_db(config.db_path)

    if warn_if_live(mode):
        time.sleep(5)

    engine, trade_repo, position_repo = build_engine(config, mode)
    configure_routers(trade_repo=trade_repo, position_repo=position_repo, engine=engine)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        engine.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.once:
        report = asyncio.run(engine.run_cycle())
        logger.info("Single cycle finished: %s", report.to_dict())
    elif args.engine_only:
        asyncio.run(_run_engine_only(engine, mode, config.poll_interval_seconds))
    else:
        asyncio.run(
            _run_with_server(engine, mode, config.poll_interval_seconds, config.health_port)
        )


async def _run_with_server(engine, mode: str, poll_interval: int, port: int = 8080) -> None:
    """Start the API server and the trading loop concurrently."""
    import asyncio
    import uvicorn

    logger.info(
        "Starting PerpGuard in %s mode for %s.",
        mode, ", ".join(i.pair for i in engine.instruments),
    )

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        engine.run(poll_interval=poll_interval),
        return_exceptions=True,
    )
    logger.info("PerpGuard stopped. Results: %s", results)


async def _run_engine_only(engine, mode: str, poll_interval: int) -> None:
    """Run the trading loop without starting the API server."""
    logger.info(
        "Starting PerpGuard engine (no API) in %s mode for %s.",
        mode, ", ".join(i.pair for i in engine.instruments),
    )
    await engine.run(poll_interval=poll_interval)
    logger.info("PerpGuard engine stopped.")


if __name__ == "__main__":
    _run_cli()
