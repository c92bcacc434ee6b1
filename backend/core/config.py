"""
Engine Configuration
====================
Typed configuration for the trading cycle:

  RiskConfig        : portfolio/trade limits consumed by the RiskEngine
  ExecutionContext  : per-cycle order parameters consumed by the ExecutionRouter
  ConsensusPolicy   : multi-strategy scoring knobs consumed by the signal providers
  EngineSettings    : process-level settings read from the environment (.env)

Unknown keys are rejected (extra="forbid") so a typo in an override fails loudly
instead of being silently ignored.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from trading_interface.events.schemas import OrderType, TimeInForce, TradingMode


class RiskConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_drawdown:       float = Field(default=0.15, gt=0)   # 15% unrealized loss vs portfolio
    max_exposure:       float = Field(default=0.50, gt=0)   # gross exposure / portfolio
    max_position_size:  float = Field(default=0.10, gt=0)   # single trade / portfolio
    max_daily_loss:     float = Field(default=0.05, gt=0)
    max_correlation:    float = Field(default=0.70, ge=0, le=1)
    min_confidence:     float = Field(default=0.60, ge=0, le=1)
    max_open_positions: int = Field(default=10, ge=0)
    require_stop_loss:  bool = True
    max_leverage:       float = Field(default=2.0, gt=0)

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "RiskConfig":
        """Returns a validated copy with `overrides` applied; unknown keys raise ValidationError."""
        if not overrides:
            return self
        return RiskConfig(**{**self.model_dump(), **overrides})


class ExecutionContext(BaseModel):
    """
    Order parameters for one execution. At most one of `quantity` / `notional`;
    with neither, the router sizes the order at 10% of available buying power.
    """
    model_config = ConfigDict(extra="forbid")

    mode:           TradingMode = TradingMode.PAPER
    order_type:     OrderType = OrderType.MARKET
    time_in_force:  TimeInForce = TimeInForce.DAY
    quantity:       Optional[float] = None
    notional:       Optional[float] = None
    limit_price:    Optional[float] = None
    stop_price:     Optional[float] = None
    stop_loss:      bool = True
    take_profit:    bool = True
    extended_hours: bool = False
    dry_run:        bool = False

    @model_validator(mode="after")
    def _one_sizing_mode(self):
        if self.quantity is not None and self.notional is not None:
            raise ValueError("Specify either quantity or notional, not both.")
        return self


class ConsensusPolicy(BaseModel):
    """
    Tuned multipliers for multi-strategy signal scoring. The defaults reproduce the
    legacy heuristics; none of them has a derivation, so treat them as policy.
    """
    model_config = ConfigDict(extra="forbid")

    strong_confirmation_bonus: float = 1.15   # 3+ strategies agree
    confirmation_bonus:        float = 1.08   # 2 strategies agree
    trend_aligned_multiplier:  float = 1.05   # signal direction matches the trend
    counter_trend_multiplier:  float = 0.90
    high_volatility_multiplier: float = 0.85
    high_volatility_threshold: float = 0.05   # stdev of daily returns
    stop_loss_pct:             float = 0.02
    take_profit_pct:           float = 0.04   # 2:1 reward/risk


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


_RISK_ENV_FIELDS = {
    "RISK_MAX_DRAWDOWN":       ("max_drawdown", float),
    "RISK_MAX_EXPOSURE":       ("max_exposure", float),
    "RISK_MAX_POSITION_SIZE":  ("max_position_size", float),
    "RISK_MAX_DAILY_LOSS":     ("max_daily_loss", float),
    "RISK_MAX_CORRELATION":    ("max_correlation", float),
    "RISK_MIN_CONFIDENCE":     ("min_confidence", float),
    "RISK_MAX_OPEN_POSITIONS": ("max_open_positions", int),
    "RISK_MAX_LEVERAGE":       ("max_leverage", float),
}


def risk_config_from_env() -> RiskConfig:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, cast) in _RISK_ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw not in (None, ""):
            overrides[field_name] = cast(raw)
    if os.getenv("RISK_REQUIRE_STOP_LOSS") not in (None, ""):
        overrides["require_stop_loss"] = _env_bool("RISK_REQUIRE_STOP_LOSS", True)
    return RiskConfig().merged(overrides)


@dataclass
class EngineSettings:
    api_key:               str = ""
    api_secret:            str = ""
    trading_mode:          TradingMode = TradingMode.PAPER
    allow_live_trading:    bool = False
    database_url:          str = "sqlite:///./hedge_cycle.db"
    watchlist:             List[str] = field(default_factory=lambda: ["AAPL", "MSFT", "SPY"])
    scan_interval_minutes: int = 20
    scheduler_enabled:     bool = False
    order_timeout_seconds: float = 5.0
    order_max_retries:     int = 3
    risk:                  RiskConfig = field(default_factory=RiskConfig)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        watchlist = [t.strip().upper() for t in os.getenv("WATCHLIST", "").split(",") if t.strip()]
        return cls(
            api_key               = os.getenv("APCA_API_KEY_ID", ""),
            api_secret            = os.getenv("APCA_API_SECRET_KEY", ""),
            trading_mode          = TradingMode(os.getenv("TRADING_MODE", "paper").lower()),
            allow_live_trading    = _env_bool("ALLOW_LIVE_TRADING", False),
            database_url          = os.getenv("DATABASE_URL", "sqlite:///./hedge_cycle.db"),
            watchlist             = watchlist or ["AAPL", "MSFT", "SPY"],
            scan_interval_minutes = _env_int("SCAN_INTERVAL_MINUTES", 20),
            scheduler_enabled     = _env_bool("SCHEDULER_ENABLED", False),
            order_timeout_seconds = _env_float("ORDER_TIMEOUT_SECONDS", 5.0),
            order_max_retries     = _env_int("ORDER_MAX_RETRIES", 3),
            risk                  = risk_config_from_env(),
        )
