"""
Order Status Poller
===================
Optional background follow-up for submitted orders. The ExecutionRouter hands
over an order id and returns immediately; the poller checks the broker after
`initial_delay` and then every `interval` seconds until the order reaches a
terminal status (filled / canceled / expired / rejected) or `max_duration` passes.

Callbacks receive every observed BrokerOrder and may be sync or async.
"""
import asyncio
import inspect
import logging
from typing import Callable, Dict, List

from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.exceptions import BrokerException
from trading_interface.events.schemas import BrokerOrder

logger = logging.getLogger("OrderStatusPoller")

StatusCallback = Callable[[BrokerOrder], object]


class OrderStatusPoller:
    def __init__(
        self,
        broker: AbstractBrokerAPI,
        initial_delay: float = 1.0,
        interval: float = 5.0,
        max_duration: float = 300.0,
    ):
        self.broker        = broker
        self.initial_delay = initial_delay
        self.interval      = interval
        self.max_duration  = max_duration
        self._callbacks: List[StatusCallback] = []
        self._tasks: Dict[str, asyncio.Task] = {}

    def register_callback(self, callback: StatusCallback) -> None:
        self._callbacks.append(callback)

    @property
    def tracked_orders(self) -> List[str]:
        return list(self._tasks)

    def track(self, order_id: str) -> asyncio.Task:
        """Starts polling `order_id` in the background. Must be called from a running loop."""
        existing = self._tasks.get(order_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._poll(order_id))
        self._tasks[order_id] = task
        task.add_done_callback(lambda t: self._forget(order_id, t))
        return task

    def _forget(self, order_id: str, task: asyncio.Task) -> None:
        # A re-tracked order owns the slot; only drop our own task.
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]

    async def _poll(self, order_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_duration
        await asyncio.sleep(self.initial_delay)

        while True:
            try:
                order = await self.broker.get_order(order_id)
            except BrokerException as e:
                logger.warning(f"Status poll failed for {order_id}: {e}")
            else:
                await self._notify(order)
                if order.is_terminal:
                    logger.info(f"Order {order_id} reached terminal status '{order.status}'")
                    return

            if loop.time() + self.interval > deadline:
                logger.warning(f"Stopped polling {order_id} after {self.max_duration:.0f}s without terminal status")
                return
            await asyncio.sleep(self.interval)

    async def _notify(self, order: BrokerOrder) -> None:
        for callback in self._callbacks:
            try:
                outcome = callback(order)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Status callback failed for {order.order_id}: {e}")

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
