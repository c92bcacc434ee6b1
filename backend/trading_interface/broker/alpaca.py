import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from core.portfolio_state import AccountSnapshot, PositionSnapshot
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.exceptions import (
    BrokerTimeoutError, InsufficientFundsError, InvalidTickerError, MarketClosedError,
    NetworkError, OrderRejectedError, RateLimitError, UnauthorizedError,
)
from trading_interface.events.schemas import (
    BrokerOrder, OrderRequest, OrderSide, OrderType, PriceBar, TradingMode,
)

logger = logging.getLogger("AlpacaAdapter")

PAPER_BASE_URL = "https://paper-api.alpaca.markets/v2"
LIVE_BASE_URL  = "https://api.alpaca.markets/v2"
DATA_BASE_URL  = "https://data.alpaca.markets/v2"

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _float(value: Any, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    return float(value)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Alpaca returns RFC3339 with nanoseconds; trim to what fromisoformat accepts.
    text = _FRACTION_RE.sub(r"\1", value.replace("Z", "+00:00"))
    return datetime.fromisoformat(text)


class AlpacaBroker(AbstractBrokerAPI):
    """
    Concrete implementation of the AbstractBrokerAPI for Alpaca.
    Defaults to paper-trading URLs; live URLs require an explicit LIVE mode.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        mode: TradingMode = TradingMode.PAPER,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.mode     = mode
        self.base_url = LIVE_BASE_URL if mode == TradingMode.LIVE else PAPER_BASE_URL
        self.data_url = DATA_BASE_URL
        self._client  = client or httpx.AsyncClient(
            headers={
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": api_secret,
                "accept": "application/json",
            },
            timeout=timeout,
        )
        logger.info(f"Alpaca API Client Initialized ({self.base_url})")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message", "")) or response.text
        except ValueError:
            return response.text

    def _handle_response_errors(self, response: httpx.Response) -> None:
        """Translates Alpaca specific HTTP error codes into our standardized exceptions."""
        if response.status_code < 400:
            return

        msg = self._error_message(response)
        lowered = msg.lower()

        if response.status_code == 429:
            raise RateLimitError("Alpaca Rate Limit (HTTP 429) hit.")
        if response.status_code == 401:
            raise UnauthorizedError(f"Alpaca rejected credentials: {msg}")
        if response.status_code >= 500:
            raise NetworkError(f"Alpaca Internal Server Error: {response.status_code}")

        # 403 / 422 are business rejections; never retried.
        if "insufficient buying power" in lowered:
            raise InsufficientFundsError(f"Alpaca Rejected: {msg}")
        if "market is closed" in lowered:
            raise MarketClosedError("Market is closed.")
        if "invalid symbol" in lowered or "asset not found" in lowered:
            raise InvalidTickerError(f"Ticker not found: {msg}")
        raise OrderRejectedError(f"Alpaca HTTP {response.status_code}: {msg}")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error(f"HTTP timeout during {method} {url}: {exc}")
            raise BrokerTimeoutError(f"HTTPx Timeout: {exc}")
        except httpx.RequestError as exc:
            logger.error(f"HTTP request failed during {method} {url}: {exc}")
            raise NetworkError(f"HTTPx Request Error: {exc}")

    async def get_account(self) -> AccountSnapshot:
        """Fetches and abstracts Alpaca 'account' payload."""
        response = await self._request("GET", f"{self.base_url}/account")
        self._handle_response_errors(response)
        data = response.json()

        equity      = _float(data.get("equity"))
        last_equity = _float(data.get("last_equity"))
        return AccountSnapshot(
            total_value        = _float(data.get("portfolio_value"), equity),
            cash               = _float(data.get("cash")),
            buying_power       = _float(data.get("buying_power")),
            equity             = equity,
            last_equity        = last_equity,
            day_pnl            = equity - last_equity,
            long_market_value  = _float(data.get("long_market_value")),
            short_market_value = _float(data.get("short_market_value")),
            day_trade_count    = int(data.get("daytrade_count", 0) or 0),
            trading_blocked    = bool(data.get("trading_blocked") or data.get("account_blocked")),
        )

    async def get_positions(self) -> List[PositionSnapshot]:
        """Fetches current portfolio array and standardizes it to `PositionSnapshot`."""
        response = await self._request("GET", f"{self.base_url}/positions")
        self._handle_response_errors(response)

        return [
            PositionSnapshot(
                symbol         = p.get("symbol"),
                quantity       = _float(p.get("qty")),
                side           = p.get("side", "long"),
                market_value   = _float(p.get("market_value")),
                cost_basis     = _float(p.get("cost_basis")),
                unrealized_pnl = _float(p.get("unrealized_pl")),
            )
            for p in response.json()
        ]

    def _order_payload(self, order: OrderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "symbol":          order.symbol,
            "side":            order.side.value,
            "type":            order.order_type.value,
            "time_in_force":   order.time_in_force.value,
            "client_order_id": order.client_order_id,  # Guarantee no duplicate retries
        }
        if order.quantity is not None:
            payload["qty"] = str(order.quantity)
        if order.notional is not None:
            payload["notional"] = str(round(order.notional, 2))
        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
            payload["limit_price"] = str(round(order.limit_price, 2))
        if order.order_type in (OrderType.STOP, OrderType.STOP_LIMIT):
            payload["stop_price"] = str(round(order.stop_price, 2))
        if order.extended_hours:
            payload["extended_hours"] = True
        if order.order_class:
            payload["order_class"] = order.order_class
            if order.stop_loss_price:
                payload["stop_loss"] = {"stop_price": str(round(order.stop_loss_price, 2))}
            if order.take_profit_price:
                payload["take_profit"] = {"limit_price": str(round(order.take_profit_price, 2))}
        return payload

    @staticmethod
    def _to_order(data: Dict[str, Any]) -> BrokerOrder:
        return BrokerOrder(
            order_id         = str(data.get("id")),
            client_order_id  = data.get("client_order_id"),
            symbol           = data.get("symbol", ""),
            side             = OrderSide(data.get("side", "buy")),
            status           = data.get("status", "accepted"),
            quantity         = _float(data.get("qty"), None) if data.get("qty") else None,
            notional         = _float(data.get("notional"), None) if data.get("notional") else None,
            filled_quantity  = _float(data.get("filled_qty")),
            filled_avg_price = _float(data.get("filled_avg_price"), None) if data.get("filled_avg_price") else None,
            submitted_at     = _parse_time(data.get("submitted_at")),
        )

    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        """
        Translates our internal definitions to the exact JSON Alpaca expects.
        A 422 on a reused client_order_id means an earlier attempt landed; return that order.
        """
        response = await self._request("POST", f"{self.base_url}/orders", json=self._order_payload(order))

        if response.status_code == 422 and "client_order_id" in self._error_message(response).lower():
            existing = await self.get_order_by_client_id(order.client_order_id)
            if existing is not None:
                logger.warning(f"Duplicate client_order_id {order.client_order_id}; returning existing order.")
                return existing

        self._handle_response_errors(response)
        return self._to_order(response.json())

    async def get_order(self, order_id: str) -> BrokerOrder:
        response = await self._request("GET", f"{self.base_url}/orders/{order_id}")
        self._handle_response_errors(response)
        return self._to_order(response.json())

    async def get_order_by_client_id(self, client_order_id: str) -> Optional[BrokerOrder]:
        response = await self._request(
            "GET",
            f"{self.base_url}/orders:by_client_order_id",
            params={"client_order_id": client_order_id},
        )
        if response.status_code == 404:
            return None
        self._handle_response_errors(response)
        return self._to_order(response.json())

    async def cancel_order(self, order_id: str) -> bool:
        """Cancels open orders by Alpaca ID."""
        response = await self._request("DELETE", f"{self.base_url}/orders/{order_id}")
        self._handle_response_errors(response)
        return response.status_code == 204  # 204 No Content is standard success

    async def get_bars(self, symbol: str, limit: int = 100) -> List[PriceBar]:
        """Daily bars from the free IEX feed."""
        start = (datetime.utcnow() - timedelta(days=limit * 2)).strftime("%Y-%m-%dT%H:%M:%SZ")
        response = await self._request(
            "GET",
            f"{self.data_url}/stocks/{symbol}/bars",
            params={"timeframe": "1Day", "limit": limit, "start": start, "feed": "iex"},
        )
        self._handle_response_errors(response)
        return [
            PriceBar(
                timestamp = _parse_time(bar["t"]),
                open      = bar["o"],
                high      = bar["h"],
                low       = bar["l"],
                close     = bar["c"],
                volume    = bar.get("v", 0),
            )
            for bar in response.json().get("bars") or []
        ]

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
