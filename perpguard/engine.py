"""PerpGuard — trading engine (cycle orchestration).

One cycle = one account snapshot, then every instrument concurrently:
market state → advisor → decision validation → PENDING trade → execution.
Data fetches run in parallel; admission and order placement are serialised
behind a single lock so every buy sees the exposure admitted before it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from perpguard.advisor.base import AdvisorProtocol
from perpguard.errors import DecisionValidationError
from perpguard.execution.executor import ExecutionEngine
from perpguard.models.decision import Operation, decision_to_json, parse_decision
from perpguard.models.instrument import Instrument
from perpguard.models.ledger import TradeStatus
from perpguard.repos.trade_repo import TradeRepo
from perpguard.risk.account_profile import AccountRiskProfile, AccountRiskProfiler
from perpguard.strategy.market_state import MarketSignalAggregator

logger = logging.getLogger("perpguard")


@dataclass(frozen=True)
class SymbolOutcome:
    symbol: str
    operation: Optional[str] = None
    trade_id: Optional[int] = None
    success: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class CycleReport:
    cycle: int
    started_at: str
    finished_at: str
    outcomes: tuple[SymbolOutcome, ...] = field(default_factory=tuple)
    timed_out: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "cycle": self.cycle,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "timed_out": self.timed_out,
            "error": self.error,
            "outcomes": [o.__dict__.copy() for o in self.outcomes],
        }


class TradingEngine:
    """Runs decision cycles across the configured instruments.

    Args:
        instruments: Instruments traded every cycle.
        advisor: Source of raw decisions.
        aggregator: Builds the per-instrument ``MarketState``.
        profiler: Builds the per-cycle ``AccountRiskProfile``.
        executor: Executes validated decisions.
        trade_repo: Trade ledger (for PENDING and validation-failure rows).
        cycle_timeout: Seconds a whole cycle may take before it is cancelled.
    """

    def __init__(
        self,
        instruments: list[Instrument],
        advisor: AdvisorProtocol,
        aggregator: MarketSignalAggregator,
        profiler: AccountRiskProfiler,
        executor: ExecutionEngine,
        trade_repo: TradeRepo,
        cycle_timeout: float = 300.0,
    ) -> None:
        self._instruments = list(instruments)
        self._advisor = advisor
        self._aggregator = aggregator
        self._profiler = profiler
        self._executor = executor
        self._trades = trade_repo
        self._cycle_timeout = cycle_timeout
        self._lock = asyncio.Lock()
        self._running = False
        self._cycle_count = 0
        self._last_report: Optional[CycleReport] = None

    @property
    def instruments(self) -> list[Instrument]:
        return list(self._instruments)

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────────────

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    async def run(self, poll_interval: int = 300, max_cycles: int = 0) -> list[CycleReport]:
        """Run cycles until stopped.

        Args:
            poll_interval: Seconds between cycle starts.
            max_cycles: Stop after this many cycles (0 = unlimited).
        """
        self._running = True
        reports: list[CycleReport] = []
        cycle = 0

        while self._running:
            cycle += 1
            try:
                reports.append(await self.run_cycle())
            except Exception as exc:
                logger.error("Cycle %d error: %s", cycle, exc)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep; checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        self._running = False
        return reports

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_cycle(self, instruments: Optional[list[Instrument]] = None) -> CycleReport:
        """Run one decision cycle and return its report.

        Per-symbol failures are recorded and never abort the cycle.  The
        whole cycle is cancelled once ``cycle_timeout`` elapses.
        """
        instruments = list(instruments or self._instruments)
        self._cycle_count += 1
        cycle = self._cycle_count
        started_at = datetime.now(timezone.utc).isoformat()
        outcomes: dict[Instrument, SymbolOutcome] = {}
        timed_out = False
        error = None

        logger.info(
            "Cycle %d starting for %s", cycle, ", ".join(i.pair for i in instruments)
        )
        try:
            await asyncio.wait_for(
                self._run_symbols(instruments, outcomes), timeout=self._cycle_timeout
            )
        except asyncio.TimeoutError:
            timed_out = True
            error = f"Cycle exceeded {self._cycle_timeout:.0f}s deadline"
            logger.error("Cycle %d: %s", cycle, error)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Cycle %d aborted", cycle)

        for instrument in instruments:
            outcomes.setdefault(
                instrument,
                SymbolOutcome(symbol=instrument.pair, error="Not completed"),
            )

        report = CycleReport(
            cycle=cycle,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc).isoformat(),
            outcomes=tuple(outcomes[i] for i in instruments),
            timed_out=timed_out,
            error=error,
        )
        self._last_report = report
        logger.info(
            "Cycle %d finished: %d/%d succeeded",
            cycle, sum(o.success for o in report.outcomes), len(report.outcomes),
        )
        return report

    async def _run_symbols(
        self,
        instruments: list[Instrument],
        outcomes: dict[Instrument, SymbolOutcome],
    ) -> None:
        profile = await self._profiler.build_profile(instruments)
        self._executor.begin_cycle()
        await asyncio.gather(
            *(self._run_symbol(i, profile, outcomes) for i in instruments)
        )

    async def _run_symbol(
        self,
        instrument: Instrument,
        profile: AccountRiskProfile,
        outcomes: dict[Instrument, SymbolOutcome],
    ) -> None:
        trade_id: Optional[int] = None
        try:
            market_state = await self._aggregator.evaluate(instrument)
            raw = await self._advisor.decide(instrument, market_state, profile)

            try:
                decision = parse_decision(raw)
            except DecisionValidationError as exc:
                trade_id = self._trades.create_trade(
                    instrument.pair,
                    Operation.HOLD.value,
                    status=TradeStatus.FAILED,
                    error=f"Invalid decision: {exc}",
                )
                logger.warning(
                    "%s: rejected malformed decision (trade %d): %s",
                    instrument.pair, trade_id, exc,
                )
                outcomes[instrument] = SymbolOutcome(
                    symbol=instrument.pair,
                    operation=Operation.HOLD.value,
                    trade_id=trade_id,
                    error=str(exc),
                )
                return

            logger.info("%s decision: %s", instrument.pair, decision_to_json(decision))
            trade_id = self._trades.create_trade(
                instrument.pair,
                decision.operation.value,
                pricing=decision.buy.pricing if decision.buy else None,
                amount=decision.buy.amount if decision.buy else None,
                leverage=decision.buy.leverage if decision.buy else None,
                percentage=decision.sell.percentage if decision.sell else None,
                stop_loss=decision.stop_loss,
                take_profit=decision.take_profit,
                chat=decision.chat,
            )

            async with self._lock:
                result = await self._executor.execute(trade_id, instrument, decision, profile)

            outcomes[instrument] = SymbolOutcome(
                symbol=instrument.pair,
                operation=decision.operation.value,
                trade_id=trade_id,
                success=result.success,
                error=result.error,
            )
        except asyncio.CancelledError:
            if trade_id is not None:
                self._mark_failed(trade_id, "Cycle deadline exceeded")
            raise
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("%s: symbol cycle failed", instrument.pair)
            if trade_id is not None:
                self._mark_failed(trade_id, message)
            outcomes[instrument] = SymbolOutcome(
                symbol=instrument.pair, trade_id=trade_id, error=message
            )

    def _mark_failed(self, trade_id: int, reason: str) -> None:
        trade = self._trades.get_trade(trade_id)
        if trade is not None and trade.status in (TradeStatus.PENDING, TradeStatus.EXECUTING):
            self._trades.update_trade(trade_id, status=TradeStatus.FAILED, error=reason)
