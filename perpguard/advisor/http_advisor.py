"""HTTP advisor — posts the decision context to a remote service."""

import asyncio
import dataclasses
import logging

import httpx

from perpguard.advisor.base import RawDecision
from perpguard.errors import AdvisorError
from perpguard.models.instrument import Instrument
from perpguard.risk.account_profile import AccountRiskProfile
from perpguard.strategy.models import MarketState

logger = logging.getLogger("perpguard.advisor")

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}


def build_context(
    instrument: Instrument,
    market_state: MarketState,
    profile: AccountRiskProfile,
) -> dict:
    """JSON-ready payload describing one instrument and the account."""
    return {
        "symbol": instrument.pair,
        "marketState": dataclasses.asdict(market_state),
        "accountProfile": {
            **dataclasses.asdict(profile),
            "max_risk_fraction": profile.max_risk_fraction,
        },
    }


class HttpAdvisor:
    """POSTs ``build_context`` to *url* and returns the response body as text.

    Args:
        url: Advisor endpoint.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, url: str, timeout: float = 60.0) -> None:
        self._url = url
        self._timeout = timeout

    async def decide(
        self,
        instrument: Instrument,
        market_state: MarketState,
        profile: AccountRiskProfile,
    ) -> RawDecision:
        payload = build_context(instrument, market_state, profile)
        last_exc: Exception | None = None

        async with httpx.AsyncClient() as client:
            for attempt in range(_MAX_RETRIES):
                try:
                    resp = await client.post(self._url, json=payload, timeout=self._timeout)
                    if resp.status_code in _RETRYABLE_STATUS_CODES:
                        last_exc = AdvisorError(f"Advisor returned HTTP {resp.status_code}")
                    else:
                        resp.raise_for_status()
                        logger.debug("Advisor replied for %s: %s", instrument.pair, resp.text)
                        return resp.text
                except httpx.HTTPStatusError as exc:
                    raise AdvisorError(
                        f"Advisor rejected request: HTTP {exc.response.status_code}"
                    ) from exc
                except httpx.TransportError as exc:
                    last_exc = exc

                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Advisor attempt %d/%d for %s failed (%s), retrying in %.1fs",
                    attempt + 1, _MAX_RETRIES, instrument.pair, last_exc, delay,
                )
                await asyncio.sleep(delay)

        raise AdvisorError(f"Advisor unreachable after {_MAX_RETRIES} attempts: {last_exc}")
