import abc
from typing import List, Optional

from core.portfolio_state import AccountSnapshot, PositionSnapshot
from trading_interface.events.schemas import BrokerOrder, OrderRequest, PriceBar


class AbstractBrokerAPI(abc.ABC):
    """
    Standardized, broker-agnostic interface wrapping external REST APIs.
    Every concrete class (e.g., AlpacaBroker) MUST implement these methods.
    Returns schema models instead of dynamic JSON dicts to enforce determinism.
    Callers own timeouts and retries.
    """

    @abc.abstractmethod
    async def get_account(self) -> AccountSnapshot:
        """Fetch current equity, buying power, and account locking status."""
        pass

    @abc.abstractmethod
    async def get_positions(self) -> List[PositionSnapshot]:
        """Fetch open positions strictly from the Broker's perspective."""
        pass

    @abc.abstractmethod
    async def submit_order(self, order: OrderRequest) -> BrokerOrder:
        """
        Submits an order carrying `order.client_order_id`.
        Must raise a standardized BrokerException subclass if the call fails.
        """
        pass

    @abc.abstractmethod
    async def get_order(self, order_id: str) -> BrokerOrder:
        pass

    @abc.abstractmethod
    async def get_order_by_client_id(self, client_order_id: str) -> Optional[BrokerOrder]:
        """Looks an order up by idempotency key; None if the broker never saw it."""
        pass

    @abc.abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        pass

    async def get_bars(self, symbol: str, limit: int = 100) -> List[PriceBar]:
        raise NotImplementedError(f"{type(self).__name__} does not serve market data")
