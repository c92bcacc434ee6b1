"""
Shared pytest fixtures and dummy collaborators for the cycle tests.
"""
import asyncio
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from core.portfolio_state import AccountSnapshot, PortfolioState, PositionSnapshot
from core.store import AbstractTradingStore, StoreError
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.exceptions import OrderRejectedError
from trading_interface.events.schemas import (
    BrokerOrder, LearningSample, OrderRequest, PriceBar, Signal, SignalAction,
    StrategyPerformance, TradeRecord,
)


def make_account(**overrides) -> AccountSnapshot:
    values = dict(
        total_value=100_000.0,
        cash=50_000.0,
        buying_power=50_000.0,
        equity=100_000.0,
        last_equity=100_000.0,
        long_market_value=20_000.0,
        short_market_value=0.0,
    )
    values.update(overrides)
    return AccountSnapshot(**values)


def make_portfolio(positions: Optional[List[PositionSnapshot]] = None, **account_overrides) -> PortfolioState:
    return PortfolioState(account=make_account(**account_overrides), positions=positions or [])


def make_signal(action: SignalAction = SignalAction.BUY, confidence: float = 0.8, **overrides) -> Signal:
    values = dict(
        symbol="AAPL",
        action=action,
        confidence=confidence,
        risk_score=1 - confidence,
        strategy_id="momentum",
        stop_loss=176.4 if action != SignalAction.HOLD else 0.0,
        take_profit=187.2 if action != SignalAction.HOLD else 0.0,
        current_price=180.0,
    )
    values.update(overrides)
    return Signal(**values)


def make_bars(closes: List[float], volumes: Optional[List[float]] = None) -> List[PriceBar]:
    start = datetime(2024, 1, 1)
    volumes = volumes or [1_000_000.0] * len(closes)
    return [
        PriceBar(
            timestamp=start + timedelta(days=i),
            open=c, high=c * 1.005, low=c * 0.995, close=c, volume=v,
        )
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


class DummyBroker(AbstractBrokerAPI):
    """
    Scriptable broker. `submit_effects` is consumed one item per submit call:
    an Exception instance is raised, "hang" sleeps past any timeout, and
    None fills the order. Once exhausted, every call fills.
    """

    def __init__(self, account=None, positions=None, submit_effects=None, bars=None, account_error=None):
        self.account = account or make_account()
        self.positions = positions or []
        self.submit_effects = list(submit_effects or [])
        self.bars = bars
        self.account_error = account_error
        self.submitted: List[OrderRequest] = []
        self.accepted = {}   # client_order_id -> BrokerOrder
        self.lookups: List[str] = []
        self.cancelled: List[str] = []
        self.order_status = "accepted"

    async def get_account(self):
        if self.account_error:
            raise self.account_error
        return self.account

    async def get_positions(self):
        return self.positions

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        self.submitted.append(order)
        effect = self.submit_effects.pop(0) if self.submit_effects else None
        if isinstance(effect, Exception):
            raise effect
        if effect == "hang":
            await asyncio.sleep(3600)
        if effect == "land_then_hang":
            self._accept(order)
            await asyncio.sleep(3600)
        return self.accepted.get(order.client_order_id) or self._accept(order)

    def _accept(self, order: OrderRequest) -> BrokerOrder:
        broker_order = BrokerOrder(
            order_id=f"brk_{uuid.uuid4().hex[:8]}",
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side,
            status=self.order_status,
            quantity=order.quantity,
            notional=order.notional,
            filled_quantity=10.0,
            filled_avg_price=180.0,
            submitted_at=datetime.utcnow(),
        )
        self.accepted[order.client_order_id] = broker_order
        return broker_order

    async def get_order(self, order_id: str) -> BrokerOrder:
        for order in self.accepted.values():
            if order.order_id == order_id:
                return order
        raise OrderRejectedError(f"Order not found: {order_id}")

    async def get_order_by_client_id(self, client_order_id: str):
        self.lookups.append(client_order_id)
        return self.accepted.get(client_order_id)

    async def cancel_order(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return True

    async def get_bars(self, symbol: str, limit: int = 100):
        return (self.bars or [])[-limit:]


class DummyStore(AbstractTradingStore):
    def __init__(self, fail_trades: bool = False, fail_samples: bool = False):
        self.fail_trades = fail_trades
        self.fail_samples = fail_samples
        self.trades: List[TradeRecord] = []
        self.samples: List[LearningSample] = []

    async def append_trade_record(self, record):
        if self.fail_trades:
            raise StoreError("trade table unavailable")
        self.trades.append(record)

    async def append_learning_sample(self, sample):
        if self.fail_samples:
            raise StoreError("learning table unavailable")
        self.samples.append(sample)

    async def load_strategy_aggregate(self, strategy_id):
        rows = [s for s in self.samples if s.strategy_id == strategy_id]
        if not rows:
            return None
        successes = sum(1 for s in rows if s.execution_success)
        return StrategyPerformance(
            strategy_id=strategy_id,
            total_signals=len(rows),
            successful_signals=successes,
            accuracy=successes / len(rows) * 100,
            average_confidence=sum(s.signal_confidence for s in rows) / len(rows),
            average_pnl=sum(s.pnl or 0.0 for s in rows) / len(rows),
        )

    async def load_strategy_ids(self):
        return sorted({s.strategy_id for s in self.samples})

    async def load_peak_portfolio_value(self):
        return max((t.portfolio_value for t in self.trades), default=0.0)

    async def recent_trades(self, limit=50):
        return list(reversed(self.trades))[:limit]

    async def recent_samples(self, strategy_id=None, limit=1000):
        rows = [s for s in self.samples if strategy_id is None or s.strategy_id == strategy_id]
        return rows[-limit:]


@pytest.fixture
def broker():
    return DummyBroker()


@pytest.fixture
def store():
    return DummyStore()
