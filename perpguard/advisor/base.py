"""Advisor protocol — the external source of trading decisions.

An advisor receives the market snapshot and account profile for one
instrument and returns a raw decision (JSON text or a dict).  The engine
validates whatever comes back; advisors are never trusted.
"""

from __future__ import annotations

import logging
from typing import Protocol, Union, runtime_checkable

from perpguard.models.instrument import Instrument
from perpguard.risk.account_profile import AccountRiskProfile
from perpguard.strategy.models import MarketState

logger = logging.getLogger("perpguard.advisor")

RawDecision = Union[str, bytes, dict]

HOLD = {"operation": "Hold", "chat": "No decision configured."}


@runtime_checkable
class AdvisorProtocol(Protocol):
    """Interface that all advisors must satisfy."""

    async def decide(
        self,
        instrument: Instrument,
        market_state: MarketState,
        profile: AccountRiskProfile,
    ) -> RawDecision:
        """Return a raw decision for *instrument*."""
        ...


class StaticAdvisor:
    """Returns preconfigured decisions keyed by instrument.

    Instruments without an entry get a plain Hold.
    """

    def __init__(self, decisions: dict[Instrument, RawDecision] | None = None) -> None:
        self._decisions = dict(decisions or {})

    def set_decision(self, instrument: Instrument, decision: RawDecision) -> None:
        self._decisions[instrument] = decision

    async def decide(
        self,
        instrument: Instrument,
        market_state: MarketState,
        profile: AccountRiskProfile,
    ) -> RawDecision:
        decision = self._decisions.get(instrument, HOLD)
        logger.debug("Static decision for %s: %s", instrument.pair, decision)
        return decision
