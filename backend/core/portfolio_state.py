from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class AccountSnapshot(BaseModel):
    """Read-only view of the broker account, fetched fresh each cycle."""
    model_config = ConfigDict(frozen=True)

    total_value:        float
    cash:               float
    buying_power:       float
    equity:             float
    last_equity:        float
    day_pnl:            float = 0.0
    long_market_value:  float = 0.0
    short_market_value: float = 0.0
    day_trade_count:    int = 0
    trading_blocked:    bool = False


class PositionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol:         str
    quantity:       float
    side:           str = "long"
    market_value:   float = 0.0
    cost_basis:     float = 0.0
    unrealized_pnl: float = 0.0
    entry_time:     Optional[datetime] = None
    stop_loss:      Optional[float] = None
    take_profit:    Optional[float] = None


class PortfolioState(BaseModel):
    """
    Account + positions as evaluated by the RiskEngine.
    Taken once at the start of the risk step; the broker stays the source of truth.
    """
    account:   AccountSnapshot
    positions: List[PositionSnapshot] = []

    @property
    def portfolio_value(self) -> float:
        return self.account.total_value

    @property
    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions)

    @property
    def drawdown_pct(self) -> float:
        # Only unrealized losses count; a book of winners has zero drawdown.
        if self.portfolio_value <= 0:
            return 0.0
        return max(0.0, -self.total_unrealized_pnl) / self.portfolio_value

    @property
    def exposure_pct(self) -> float:
        if self.portfolio_value <= 0:
            return 0.0
        gross = self.account.long_market_value + abs(self.account.short_market_value)
        return gross / self.portfolio_value

    @property
    def daily_pnl_pct(self) -> float:
        if self.account.last_equity <= 0:
            return 0.0
        return (self.account.equity - self.account.last_equity) / self.account.last_equity

    @property
    def open_position_count(self) -> int:
        return len(self.positions)

    def position_for(self, symbol: str) -> Optional[PositionSnapshot]:
        return next((p for p in self.positions if p.symbol == symbol), None)
