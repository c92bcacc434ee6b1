"""
Event Schemas
=============
Typed records passed between the cycle stages:

  Signal  ->  RiskDecision  ->  OrderRequest / BrokerOrder  ->  ExecutionResult
                                                         ->  TradeRecord, LearningSample

Everything here is a pydantic model so malformed payloads fail at the boundary
instead of deep inside the risk or execution code.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.utcnow()


class SignalAction(str, Enum):
    BUY  = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class RiskLevel(str, Enum):
    LOW      = "LOW"
    MEDIUM   = "MEDIUM"
    HIGH     = "HIGH"
    CRITICAL = "CRITICAL"


class TradingMode(str, Enum):
    PAPER = "paper"
    LIVE  = "live"


class OrderSide(str, Enum):
    BUY  = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET     = "market"
    LIMIT      = "limit"
    STOP       = "stop"
    STOP_LIMIT = "stop_limit"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class CycleStatus(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    HOLD     = "hold"
    ERROR    = "error"


class CycleState(str, Enum):
    SIGNAL   = "SIGNAL"
    RISK     = "RISK"
    REJECTED = "REJECTED"
    HOLD     = "HOLD"
    EXECUTE  = "EXECUTE"
    RECORD   = "RECORD"
    DONE     = "DONE"
    ERROR    = "ERROR"


# ---------------------------------------------------------------------------
# Market data & signals
# ---------------------------------------------------------------------------
class PriceBar(BaseModel):
    timestamp: datetime
    open:   float
    high:   float
    low:    float
    close:  float
    volume: float = 0.0


class Signal(BaseModel):
    """Directional recommendation from a signal provider. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    symbol:        str
    action:        SignalAction
    confidence:    float = Field(ge=0.0, le=1.0)
    risk_score:    float = Field(default=0.5, ge=0.0, le=1.0)
    strategy_id:   str
    stop_loss:     float = 0.0
    take_profit:   float = 0.0
    reason:        str = ""
    current_price: Optional[float] = None
    generated_at:  datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------
class RiskMetrics(BaseModel):
    drawdown:                float = 0.0
    exposure:                float = 0.0
    position_size_percent:   float = 0.0
    daily_pnl_percent:       float = 0.0
    open_position_count:     int = 0
    available_buying_power:  float = 0.0
    portfolio_value:         float = 0.0
    estimated_position_size: float = 0.0
    peak_drawdown:           Optional[float] = None


class RiskDecision(BaseModel):
    approved:        bool
    risk_level:      RiskLevel
    reason:          str
    warnings:        List[str] = Field(default_factory=list)
    metrics:         RiskMetrics = Field(default_factory=RiskMetrics)
    recommendations: List[str] = Field(default_factory=list)
    evaluated_at:    datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class OrderRequest(BaseModel):
    """
    Broker-agnostic order. `client_order_id` is assigned once per logical request
    and re-sent unchanged on every retry so the broker can deduplicate.
    """
    client_order_id:   str
    symbol:            str
    side:              OrderSide
    order_type:        OrderType = OrderType.MARKET
    time_in_force:     TimeInForce = TimeInForce.DAY
    quantity:          Optional[float] = None
    notional:          Optional[float] = None
    limit_price:       Optional[float] = None
    stop_price:        Optional[float] = None
    order_class:       Optional[str] = None
    stop_loss_price:   Optional[float] = None
    take_profit_price: Optional[float] = None
    extended_hours:    bool = False


class BrokerOrder(BaseModel):
    """Broker's view of an order at a point in time."""
    order_id:         str
    client_order_id:  Optional[str] = None
    symbol:           str
    side:             OrderSide
    status:           str
    quantity:         Optional[float] = None
    notional:         Optional[float] = None
    filled_quantity:  float = 0.0
    filled_avg_price: Optional[float] = None
    submitted_at:     Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset({"filled", "canceled", "expired", "rejected"})


class ExecutionResult(BaseModel):
    """Outcome of one execution attempt. Never mutated after it is returned."""
    model_config = ConfigDict(frozen=True)

    success:          bool
    symbol:           str
    side:             str
    order_id:         Optional[str] = None
    client_order_id:  Optional[str] = None
    filled_price:     Optional[float] = None
    filled_quantity:  Optional[float] = None
    notional:         Optional[float] = None
    latency_ms:       float = 0.0
    order_status:     str = "not_submitted"
    error:            Optional[str] = None
    mode:             TradingMode = TradingMode.PAPER
    attempts:         int = 0
    submitted_at:     datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Analytics & learning
# ---------------------------------------------------------------------------
class TradeRecord(BaseModel):
    symbol:            str
    side:              str
    strategy_id:       str
    status:            str                  # FILLED | ACCEPTED | REJECTED
    order_id:          Optional[str] = None
    client_order_id:   Optional[str] = None
    quantity:          float = 0.0
    price:             float = 0.0
    notional:          float = 0.0
    latency_ms:        float = 0.0
    execution_quality: str = "POOR"         # EXCELLENT | GOOD | FAIR | POOR
    confidence:        float = 0.0
    risk_score:        float = 0.0
    portfolio_value:   float = 0.0
    mode:              TradingMode = TradingMode.PAPER
    error:             Optional[str] = None
    recorded_at:       datetime = Field(default_factory=utcnow)


class LearningSample(BaseModel):
    symbol:             str
    strategy_id:        str
    signal_confidence:  float
    signal_action:      SignalAction
    execution_success:  bool
    predicted_outcome:  float
    actual_outcome:     float
    accuracy:           float
    risk_score:         float = 0.0
    pnl:                Optional[float] = None
    persisted:          bool = True
    timestamp:          datetime = Field(default_factory=utcnow)


class StrategyPerformance(BaseModel):
    strategy_id:        str
    total_signals:      int = 0
    successful_signals: int = 0
    accuracy:           float = 0.0        # percent, 0-100
    average_confidence: float = 0.0
    average_pnl:        float = 0.0
    recommendations:    List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Cycle
# ---------------------------------------------------------------------------
class CycleResult(BaseModel):
    symbol:           str
    status:           CycleStatus
    state:            CycleState
    reason:           str
    signal:           Optional[Signal] = None
    risk_decision:    Optional[RiskDecision] = None
    execution_result: Optional[ExecutionResult] = None
    trade_record:     Optional[TradeRecord] = None
    learning_sample:  Optional[LearningSample] = None
    started_at:       datetime = Field(default_factory=utcnow)
    cycle_time_ms:    float = 0.0
    error:            Optional[str] = None
