"""PerpGuard — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.

Safety limits and the trading-mode table are immutable values handed to the
execution engine and the account risk profiler at construction, so tests
can override any single limit without touching module globals.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from perpguard.errors import ConfigError


_REQUIRED_VARS = [
    "BINANCE_API_KEY",
    "BINANCE_API_SECRET",
]


@dataclass(frozen=True)
class SafetyLimits:
    """Hard limits enforced by the buy admission pipeline.

    Fractions are expressed as decimals (``0.25`` = 25 %).
    """

    min_leverage: int = 1
    max_leverage: int = 20
    min_trade_notional: float = 10.0  # USDT
    min_cash_reserve: float = 0.25
    max_position_fraction: float = 0.5
    max_daily_loss: float = 0.05
    max_weekly_loss: float = 0.10
    max_portfolio_leverage: float = 5.0
    max_risk_fraction: float = 0.03
    min_reward_risk: float = 1.5
    liquidation_buffer: float = 0.15
    maintenance_margin_rate: float = 0.004


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    binance_api_key: str
    binance_api_secret: str
    binance_environment: str  # "testnet" or "live"
    trading_symbols: tuple[str, ...]
    initial_capital: float
    dry_run: bool
    db_path: str
    log_level: str
    health_port: int
    poll_interval_seconds: int
    cycle_timeout_seconds: float
    advisor_url: str = ""
    limits: SafetyLimits = field(default_factory=SafetyLimits)

    @property
    def binance_base_url(self) -> str:
        """Return the USDⓈ-M futures REST base URL based on environment."""
        if self.binance_environment == "live":
            return "https://fapi.binance.com"
        return "https://testnet.binancefuture.com"


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _load_limits() -> SafetyLimits:
    """Build ``SafetyLimits`` from optional overrides in the environment."""
    defaults = SafetyLimits()
    return SafetyLimits(
        min_leverage=int(os.environ.get("MIN_LEVERAGE", defaults.min_leverage)),
        max_leverage=int(os.environ.get("MAX_LEVERAGE", defaults.max_leverage)),
        min_trade_notional=float(
            os.environ.get("MIN_TRADE_NOTIONAL", defaults.min_trade_notional)
        ),
        min_cash_reserve=float(
            os.environ.get("MIN_CASH_RESERVE", defaults.min_cash_reserve)
        ),
        max_position_fraction=float(
            os.environ.get("MAX_POSITION_FRACTION", defaults.max_position_fraction)
        ),
        max_daily_loss=float(os.environ.get("MAX_DAILY_LOSS", defaults.max_daily_loss)),
        max_weekly_loss=float(
            os.environ.get("MAX_WEEKLY_LOSS", defaults.max_weekly_loss)
        ),
        max_portfolio_leverage=float(
            os.environ.get("MAX_PORTFOLIO_LEVERAGE", defaults.max_portfolio_leverage)
        ),
        max_risk_fraction=float(
            os.environ.get("MAX_RISK_FRACTION", defaults.max_risk_fraction)
        ),
        min_reward_risk=float(
            os.environ.get("MIN_REWARD_RISK", defaults.min_reward_risk)
        ),
        liquidation_buffer=float(
            os.environ.get("LIQUIDATION_BUFFER", defaults.liquidation_buffer)
        ),
        maintenance_margin_rate=float(
            os.environ.get("MAINTENANCE_MARGIN_RATE", defaults.maintenance_margin_rate)
        ),
    )


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ConfigError`` (a ``ValueError``) naming the missing variable
    when a required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ConfigError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    environment = os.environ.get("BINANCE_ENVIRONMENT", "testnet")
    if environment not in ("testnet", "live"):
        raise ConfigError(
            f"BINANCE_ENVIRONMENT must be 'testnet' or 'live', got '{environment}'"
        )

    symbols = tuple(
        s.strip()
        for s in os.environ.get("TRADING_SYMBOLS", "BTC/USDT").split(",")
        if s.strip()
    )

    return Config(
        binance_api_key=os.environ["BINANCE_API_KEY"],
        binance_api_secret=os.environ["BINANCE_API_SECRET"],
        binance_environment=environment,
        trading_symbols=symbols,
        initial_capital=float(os.environ.get("START_MONEY", "20")),
        dry_run=_env_bool("DRY_RUN", "true"),
        db_path=os.environ.get("DB_PATH", "data/perpguard.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "300")),
        cycle_timeout_seconds=float(os.environ.get("CYCLE_TIMEOUT_SECONDS", "300")),
        advisor_url=os.environ.get("ADVISOR_URL", ""),
        limits=_load_limits(),
    )
