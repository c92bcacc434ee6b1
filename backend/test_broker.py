import json

import httpx
import pytest

from trading_interface.broker.alpaca import LIVE_BASE_URL, PAPER_BASE_URL, AlpacaBroker
from trading_interface.broker.exceptions import (
    BrokerTimeoutError, InsufficientFundsError, InvalidTickerError, MarketClosedError,
    NetworkError, OrderRejectedError, RateLimitError, UnauthorizedError,
)
from trading_interface.broker.simulated import SimulatedBroker
from trading_interface.events.schemas import OrderRequest, OrderSide, OrderType, TradingMode

ORDER_JSON = {
    "id": "61e69015-8549-4bfd-b9c3-01e75843f47d",
    "client_order_id": "cid-1",
    "symbol": "AAPL",
    "side": "buy",
    "status": "accepted",
    "qty": None,
    "notional": "1800",
    "filled_qty": "0",
    "filled_avg_price": None,
    "submitted_at": "2024-03-01T15:04:05.123456789Z",
}


def alpaca(handler, mode=TradingMode.PAPER) -> AlpacaBroker:
    return AlpacaBroker(mode=mode, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def order(**overrides) -> OrderRequest:
    values = dict(client_order_id="cid-1", symbol="AAPL", side=OrderSide.BUY, notional=1800.0)
    values.update(overrides)
    return OrderRequest(**values)


class TestAlpacaBroker:

    def test_paper_urls_by_default(self):
        assert alpaca(lambda r: httpx.Response(200)).base_url == PAPER_BASE_URL
        assert alpaca(lambda r: httpx.Response(200), TradingMode.LIVE).base_url == LIVE_BASE_URL

    @pytest.mark.asyncio
    async def test_account_snapshot(self):
        def handler(request):
            assert request.url.path == "/v2/account"
            return httpx.Response(200, json={
                "portfolio_value": "101000.5", "cash": "40000", "buying_power": "80000",
                "equity": "101000.5", "last_equity": "100000", "long_market_value": "61000.5",
                "short_market_value": "0", "daytrade_count": 2, "trading_blocked": False,
            })

        account = await alpaca(handler).get_account()
        assert account.total_value == 101000.5
        assert account.day_pnl == pytest.approx(1000.5)
        assert account.day_trade_count == 2
        assert account.trading_blocked is False

    @pytest.mark.asyncio
    async def test_positions(self):
        def handler(request):
            return httpx.Response(200, json=[{
                "symbol": "TSLA", "qty": "5", "side": "long", "market_value": "1200",
                "cost_basis": "1300", "unrealized_pl": "-100",
            }])

        positions = await alpaca(handler).get_positions()
        assert positions[0].symbol == "TSLA"
        assert positions[0].unrealized_pnl == -100.0

    @pytest.mark.asyncio
    async def test_bracket_order_payload(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json=ORDER_JSON)

        result = await alpaca(handler).submit_order(
            order(order_class="bracket", stop_loss_price=176.4, take_profit_price=187.2)
        )

        assert sent["client_order_id"] == "cid-1"
        assert sent["notional"] == "1800.0"
        assert "qty" not in sent
        assert sent["order_class"] == "bracket"
        assert sent["stop_loss"] == {"stop_price": "176.4"}
        assert sent["take_profit"] == {"limit_price": "187.2"}
        assert result.order_id == ORDER_JSON["id"]
        assert result.status == "accepted"
        assert result.submitted_at.microsecond == 123456

    @pytest.mark.asyncio
    async def test_limit_order_payload(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json=ORDER_JSON)

        await alpaca(handler).submit_order(order(notional=None, quantity=3, order_type=OrderType.LIMIT, limit_price=179.556))
        assert sent["qty"] == "3.0"
        assert sent["type"] == "limit"
        assert sent["limit_price"] == "179.56"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, body, error", [
        (429, {"message": "too many requests"}, RateLimitError),
        (401, {"message": "unauthorized"}, UnauthorizedError),
        (503, {"message": "upstream"}, NetworkError),
        (403, {"message": "insufficient buying power"}, InsufficientFundsError),
        (403, {"message": "market is closed"}, MarketClosedError),
        (422, {"message": "invalid symbol: ZZZZ"}, InvalidTickerError),
        (422, {"message": "qty must be > 0"}, OrderRejectedError),
    ])
    async def test_error_mapping(self, status, body, error):
        broker = alpaca(lambda r: httpx.Response(status, json=body))
        with pytest.raises(error):
            await broker.submit_order(order())

    @pytest.mark.asyncio
    async def test_timeout_is_broker_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(BrokerTimeoutError) as exc_info:
            await alpaca(handler).submit_order(order())
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_duplicate_client_id_returns_existing_order(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(422, json={"message": "client_order_id must be unique"})
            assert request.url.params["client_order_id"] == "cid-1"
            return httpx.Response(200, json={**ORDER_JSON, "status": "filled", "filled_avg_price": "180.1"})

        result = await alpaca(handler).submit_order(order())
        assert result.status == "filled"
        assert result.filled_avg_price == 180.1

    @pytest.mark.asyncio
    async def test_unknown_client_id_lookup(self):
        broker = alpaca(lambda r: httpx.Response(404, json={"message": "order not found"}))
        assert await broker.get_order_by_client_id("nope") is None

    @pytest.mark.asyncio
    async def test_cancel(self):
        def handler(request):
            assert request.method == "DELETE"
            return httpx.Response(204)

        assert await alpaca(handler).cancel_order("abc") is True

    @pytest.mark.asyncio
    async def test_bars(self):
        def handler(request):
            assert request.url.host == "data.alpaca.markets"
            assert request.url.params["timeframe"] == "1Day"
            return httpx.Response(200, json={"bars": [
                {"t": "2024-03-01T05:00:00Z", "o": 179.0, "h": 181.0, "l": 178.5, "c": 180.2, "v": 5100000},
                {"t": "2024-03-04T05:00:00Z", "o": 180.2, "h": 182.0, "l": 179.9, "c": 181.7, "v": 4800000},
            ]})

        bars = await alpaca(handler).get_bars("AAPL", limit=2)
        assert [b.close for b in bars] == [180.2, 181.7]
        assert bars[0].timestamp.day == 1


class TestSimulatedBroker:

    @pytest.mark.asyncio
    async def test_seeded_bars_are_reproducible(self):
        first = await SimulatedBroker(seed=7).get_bars("AAPL", 30)
        second = await SimulatedBroker(seed=7).get_bars("AAPL", 30)
        assert len(first) == 30
        assert [b.close for b in first] == [b.close for b in second]

    @pytest.mark.asyncio
    async def test_fill_updates_account(self):
        broker = SimulatedBroker(cash=10_000.0, seed=1)
        filled = await broker.submit_order(order(notional=1_000.0))

        assert filled.status == "filled"
        assert filled.notional == pytest.approx(1_000.0, rel=1e-4)
        account = await broker.get_account()
        assert account.cash == pytest.approx(9_000.0, rel=1e-4)
        assert account.total_value == pytest.approx(10_000.0, rel=1e-4)
        assert (await broker.get_positions())[0].symbol == "AAPL"

    @pytest.mark.asyncio
    async def test_resubmission_is_idempotent(self):
        broker = SimulatedBroker(seed=1)
        first = await broker.submit_order(order(notional=500.0))
        again = await broker.submit_order(order(notional=500.0))
        assert again.order_id == first.order_id
        assert len(await broker.get_positions()) == 1
        assert await broker.get_order_by_client_id("cid-1") == first
        assert await broker.get_order_by_client_id("other") is None

    @pytest.mark.asyncio
    async def test_rejections(self):
        broker = SimulatedBroker(cash=100.0, seed=1)
        with pytest.raises(InsufficientFundsError):
            await broker.submit_order(order(notional=5_000.0))
        with pytest.raises(InvalidTickerError):
            await broker.submit_order(order(client_order_id="cid-2", symbol="BRK.B"))
        with pytest.raises(OrderRejectedError):
            await broker.get_order("missing")
