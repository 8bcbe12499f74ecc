"""Supported instruments — a closed set validated once at the boundary."""

from enum import Enum

from perpguard.errors import UnsupportedInstrumentError


class Instrument(str, Enum):
    """USDⓈ-M perpetual contracts the agent may trade."""

    BTC = "BTC"
    ETH = "ETH"
    BNB = "BNB"
    SOL = "SOL"
    DOGE = "DOGE"

    @property
    def pair(self) -> str:
        """Unified pair notation, e.g. ``"BTC/USDT"``."""
        return f"{self.value}/USDT"

    @property
    def exchange_symbol(self) -> str:
        """Exchange-native symbol, e.g. ``"BTCUSDT"``."""
        return f"{self.value}USDT"

    @classmethod
    def parse(cls, symbol: str) -> "Instrument":
        """Map ``"BTC/USDT"``, ``"BTCUSDT"`` or ``"BTC"`` to an instrument.

        Raises ``UnsupportedInstrumentError`` for anything outside the
        closed set.
        """
        raw = symbol.strip().upper()
        if "/" in raw:
            base, _, quote = raw.partition("/")
            if quote != "USDT":
                raise UnsupportedInstrumentError(
                    f"Only USDT-margined pairs are supported, got '{symbol}'"
                )
        elif raw.endswith("USDT") and raw != "USDT":
            base = raw[: -len("USDT")]
        else:
            base = raw
        try:
            return cls(base)
        except ValueError:
            raise UnsupportedInstrumentError(
                f"Unsupported instrument '{symbol}'"
            ) from None


def parse_instruments(symbols) -> list[Instrument]:
    """Parse a configured symbol list, dropping duplicates but keeping order."""
    seen: list[Instrument] = []
    for s in symbols:
        inst = Instrument.parse(s)
        if inst not in seen:
            seen.append(inst)
    return seen
