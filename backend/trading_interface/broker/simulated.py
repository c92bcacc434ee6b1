import logging
import random
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.portfolio_state import AccountSnapshot, PositionSnapshot
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.exceptions import InsufficientFundsError, InvalidTickerError, OrderRejectedError
from trading_interface.events.schemas import BrokerOrder, OrderRequest, OrderSide, PriceBar

logger = logging.getLogger("SimulatedBroker")

BASE_PRICES = {
    "AAPL": 180.0, "GOOGL": 140.0, "MSFT": 380.0, "TSLA": 250.0, "NVDA": 480.0,
    "AMZN": 150.0, "META": 320.0, "SPY": 450.0, "QQQ": 380.0, "DIA": 350.0,
}


class SimulatedBroker(AbstractBrokerAPI):
    """
    In-process paper broker. Market orders fill immediately at the last synthetic
    close; a repeated client_order_id returns the original order instead of a duplicate.
    """

    def __init__(self, cash: float = 100_000.0, seed: Optional[int] = None, bar_count: int = 100):
        self.cash = cash
        self.last_equity = cash
        self.seed = seed
        self.bar_count = bar_count
        self._positions: Dict[str, Dict[str, float]] = {}   # symbol -> {"qty", "cost"}
        self._orders: Dict[str, BrokerOrder] = {}
        self._by_client_id: Dict[str, str] = {}
        self._bars: Dict[str, List[PriceBar]] = {}

    # ── Market data ─────────────────────────────────────────────────────────

    def _rng(self, symbol: str) -> random.Random:
        return random.Random(f"{self.seed}:{symbol}") if self.seed is not None else random.Random()

    def _generate_bars(self, symbol: str) -> List[PriceBar]:
        rng = self._rng(symbol)
        price = BASE_PRICES.get(symbol, 100 + rng.random() * 200)
        start = datetime.utcnow() - timedelta(days=self.bar_count)
        bars = []
        for i in range(self.bar_count):
            daily_return = (rng.random() - 0.48) * 0.03    # -1.44% to +1.56%
            intraday = 0.01 + rng.random() * 0.01
            open_ = price
            close = open_ * (1 + daily_return)
            bars.append(PriceBar(
                timestamp = start + timedelta(days=i),
                open      = open_,
                high      = max(open_, close) * (1 + intraday),
                low       = min(open_, close) * (1 - intraday),
                close     = close,
                volume    = int(50_000_000 * (0.5 + rng.random())),
            ))
            price = close
        return bars

    async def get_bars(self, symbol: str, limit: int = 100) -> List[PriceBar]:
        if symbol not in self._bars:
            self._bars[symbol] = self._generate_bars(symbol)
        return self._bars[symbol][-limit:]

    def last_price(self, symbol: str) -> float:
        if symbol not in self._bars:
            self._bars[symbol] = self._generate_bars(symbol)
        return self._bars[symbol][-1].close

    # ── Account ─────────────────────────────────────────────────────────────

    async def get_account(self) -> AccountSnapshot:
        long_value = sum(p["qty"] * self.last_price(s) for s, p in self._positions.items() if p["qty"] > 0)
        short_value = sum(p["qty"] * self.last_price(s) for s, p in self._positions.items() if p["qty"] < 0)
        equity = self.cash + long_value + short_value
        return AccountSnapshot(
            total_value        = equity,
            cash               = self.cash,
            buying_power       = max(self.cash, 0.0),
            equity             = equity,
            last_equity        = self.last_equity,
            day_pnl            = equity - self.last_equity,
            long_market_value  = long_value,
            short_market_value = short_value,
        )

    async def get_positions(self) -> List[PositionSnapshot]:
        positions = []
        for symbol, p in self._positions.items():
            market_value = p["qty"] * self.last_price(symbol)
            positions.append(PositionSnapshot(
                symbol         = symbol,
                quantity       = abs(p["qty"]),
                side           = "long" if p["qty"] > 0 else "short",
                market_value   = market_value,
                cost_basis     = p["cost"],
                unrealized_pnl = market_value - p["cost"],
            ))
        return positions

    # ── Orders ──────────────────────────────────────────────────────────────

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        existing_id = self._by_client_id.get(order.client_order_id)
        if existing_id is not None:
            return self._orders[existing_id]

        if not order.symbol.isalpha():
            raise InvalidTickerError(f"Ticker not found: {order.symbol}")

        price = self.last_price(order.symbol)
        quantity = order.quantity if order.quantity is not None else round(order.notional / price, 6)
        value = quantity * price
        direction = 1 if order.side == OrderSide.BUY else -1
        if order.side == OrderSide.BUY and value > self.cash:
            raise InsufficientFundsError(f"Insufficient buying power: need ${value:,.2f}")

        self.cash -= direction * value
        position = self._positions.setdefault(order.symbol, {"qty": 0.0, "cost": 0.0})
        position["qty"] += direction * quantity
        position["cost"] += direction * value
        if abs(position["qty"]) < 1e-9:
            del self._positions[order.symbol]

        broker_order = BrokerOrder(
            order_id         = f"sim_{uuid.uuid4().hex[:12]}",
            client_order_id  = order.client_order_id,
            symbol           = order.symbol,
            side             = order.side,
            status           = "filled",
            quantity         = quantity,
            notional         = value,
            filled_quantity  = quantity,
            filled_avg_price = price,
            submitted_at     = datetime.utcnow(),
        )
        self._orders[broker_order.order_id] = broker_order
        self._by_client_id[order.client_order_id] = broker_order.order_id
        logger.info(f"Simulated fill: {order.side.value} {quantity} x {order.symbol} @ ${price:,.2f}")
        return broker_order

    async def get_order(self, order_id: str) -> BrokerOrder:
        if order_id not in self._orders:
            raise OrderRejectedError(f"Order not found: {order_id}")
        return self._orders[order_id]

    async def get_order_by_client_id(self, client_order_id: str) -> Optional[BrokerOrder]:
        order_id = self._by_client_id.get(client_order_id)
        return self._orders.get(order_id) if order_id else None

    async def cancel_order(self, order_id: str) -> bool:
        # Every simulated order fills on submission; nothing is left to cancel.
        return False
