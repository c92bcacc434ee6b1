import asyncio
import logging
import time
import uuid
from typing import Optional

from core.config import ExecutionContext
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.exceptions import BrokerException, BrokerTimeoutError
from trading_interface.events.schemas import (
    BrokerOrder, ExecutionResult, OrderRequest, OrderSide, OrderType,
    RiskDecision, Signal, SignalAction, TradingMode,
)
from trading_interface.execution.status_poller import OrderStatusPoller

logger = logging.getLogger("ExecutionRouter")

DEFAULT_BUYING_POWER_FRACTION = 0.10


class OrderValidationError(ValueError):
    pass


class ExecutionRouter:
    """
    The single path from an approved RiskDecision to the broker.
    Blind to strategy logic; never writes to stores.

    NON-NEGOTIABLE SAFETY GATE: live mode is refused unless the router was
    constructed with allow_live=True.
    """

    def __init__(
        self,
        broker: AbstractBrokerAPI,
        allow_live: bool = False,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        submit_timeout: float = 5.0,
        status_poller: Optional[OrderStatusPoller] = None,
    ):
        self.broker         = broker
        self.allow_live     = allow_live
        self.max_retries    = max_retries
        self.backoff_base   = backoff_base
        self.submit_timeout = submit_timeout
        self.status_poller  = status_poller

    # ── Order construction ──────────────────────────────────────────────────

    def build_order(self, signal: Signal, decision: RiskDecision, context: ExecutionContext) -> OrderRequest:
        """Builds the broker order. Raises OrderValidationError before any network call."""
        if context.mode == TradingMode.LIVE and not self.allow_live:
            raise OrderValidationError("Live trading is disabled for this router")

        quantity = context.quantity
        notional = context.notional
        if quantity is None and notional is None:
            notional = decision.metrics.available_buying_power * DEFAULT_BUYING_POWER_FRACTION

        if quantity is not None and quantity <= 0:
            raise OrderValidationError(f"Quantity must be positive, got {quantity}")
        if notional is not None and notional <= 0:
            raise OrderValidationError(f"Notional must be positive, got {notional}")
        if context.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and not context.limit_price:
            raise OrderValidationError("Limit price required for limit orders")
        if context.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and not context.stop_price:
            raise OrderValidationError("Stop price required for stop orders")

        stop_loss_price   = signal.stop_loss if context.stop_loss and signal.stop_loss > 0 else None
        take_profit_price = signal.take_profit if context.take_profit and signal.take_profit > 0 else None
        if quantity is None and (stop_loss_price or take_profit_price):
            # Alpaca only accepts notional orders as simple orders.
            logger.info(f"Notional order for {signal.symbol}; bracket legs omitted.")
            stop_loss_price = take_profit_price = None

        return OrderRequest(
            client_order_id   = str(uuid.uuid4()),
            symbol            = signal.symbol,
            side              = OrderSide(signal.action.value.lower()),
            order_type        = context.order_type,
            time_in_force     = context.time_in_force,
            quantity          = quantity,
            notional          = notional if quantity is None else None,
            limit_price       = context.limit_price,
            stop_price        = context.stop_price,
            order_class       = "bracket" if (stop_loss_price or take_profit_price) else None,
            stop_loss_price   = stop_loss_price,
            take_profit_price = take_profit_price,
            extended_hours    = context.extended_hours,
        )

    # ── Execution ───────────────────────────────────────────────────────────

    async def execute(
        self,
        signal: Signal,
        decision: RiskDecision,
        context: Optional[ExecutionContext] = None,
    ) -> ExecutionResult:
        context = context or ExecutionContext()
        side = signal.action.value.lower()

        if not decision.approved:
            return ExecutionResult(
                success=False, symbol=signal.symbol, side=side, mode=context.mode,
                error="Risk check not approved",
            )
        if signal.action == SignalAction.HOLD:
            return ExecutionResult(
                success=True, symbol=signal.symbol, side=side, mode=context.mode,
                order_status="hold",
            )

        try:
            order = self.build_order(signal, decision, context)
        except OrderValidationError as e:
            logger.warning(f"Validation failed for {signal.symbol}: {e}")
            return ExecutionResult(
                success=False, symbol=signal.symbol, side=side, mode=context.mode,
                error=f"Validation error: {e}",
            )

        if context.dry_run:
            logger.info(f"DRY RUN: {order.side.value} {order.symbol} (client_order_id={order.client_order_id})")
            return ExecutionResult(
                success=True, symbol=order.symbol, side=side, mode=context.mode,
                client_order_id=order.client_order_id, notional=order.notional,
                order_status="dry_run",
            )

        return await self._submit_with_retries(order, context.mode)

    async def _submit_with_retries(self, order: OrderRequest, mode: TradingMode) -> ExecutionResult:
        """
        Submits `order` under its fixed client_order_id.
        Retryable failures back off base * 2^attempt; terminal failures return at once.
        """
        logger.info(f"Submitting {order.side.value} {order.symbol} (client_order_id={order.client_order_id})")
        started = time.monotonic()
        attempts = 0
        last_error = "Unknown execution error"

        while attempts <= self.max_retries:
            attempts += 1
            try:
                broker_order = await asyncio.wait_for(self.broker.submit_order(order), timeout=self.submit_timeout)
                return self._success(order, broker_order, mode, started, attempts)

            except (asyncio.TimeoutError, BrokerTimeoutError) as e:
                # Possibly submitted; reconcile by idempotency key before retrying.
                last_error = f"Order submission timed out: {str(e) or 'no response'}"
                logger.warning(f"Timeout on attempt {attempts} for {order.client_order_id}; reconciling.")
                existing = await self._lookup(order.client_order_id)
                if existing is not None:
                    logger.info(f"Broker ACK (reconciled). BrokerID: {existing.order_id}")
                    return self._success(order, existing, mode, started, attempts)

            except BrokerException as e:
                last_error = str(e) or type(e).__name__
                if not e.retryable:
                    logger.error(f"Terminal broker error for {order.symbol}: {last_error}")
                    return self._failure(order, mode, started, attempts, last_error)
                logger.warning(f"Retryable broker error on attempt {attempts}: {last_error}")

            except Exception as e:
                # Unparseable or unexpected broker response; the order may still have landed.
                logger.error(f"Unexpected error submitting {order.client_order_id}: {e}")
                existing = await self._lookup(order.client_order_id)
                if existing is not None:
                    logger.info(f"Broker ACK (reconciled). BrokerID: {existing.order_id}")
                    return self._success(order, existing, mode, started, attempts)
                return self._failure(order, mode, started, attempts, f"Execution error: {e}")

            if attempts > self.max_retries:
                break
            backoff = self.backoff_base * (2 ** (attempts - 1))
            logger.warning(f"Retrying {order.client_order_id} in {backoff:.1f}s...")
            await asyncio.sleep(backoff)

        logger.error(f"Execution failed after {attempts} attempts for {order.symbol}: {last_error}")
        return self._failure(order, mode, started, attempts, last_error)

    async def _lookup(self, client_order_id: str) -> Optional[BrokerOrder]:
        try:
            return await asyncio.wait_for(
                self.broker.get_order_by_client_id(client_order_id), timeout=self.submit_timeout
            )
        except Exception as e:
            logger.warning(f"Order lookup failed for {client_order_id}: {e}")
            return None

    def _success(
        self, order: OrderRequest, broker_order: BrokerOrder, mode: TradingMode, started: float, attempts: int
    ) -> ExecutionResult:
        latency_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Broker ACK Success. BrokerID: {broker_order.order_id} status={broker_order.status} "
            f"latency={latency_ms:.0f}ms attempts={attempts}"
        )
        if self.status_poller is not None and not broker_order.is_terminal:
            self.status_poller.track(broker_order.order_id)
        return ExecutionResult(
            success         = True,
            symbol          = order.symbol,
            side            = order.side.value,
            order_id        = broker_order.order_id,
            client_order_id = order.client_order_id,
            filled_price    = broker_order.filled_avg_price,
            filled_quantity = broker_order.filled_quantity or broker_order.quantity or order.quantity,
            notional        = broker_order.notional or order.notional,
            latency_ms      = latency_ms,
            order_status    = broker_order.status,
            mode            = mode,
            attempts        = attempts,
        )

    @staticmethod
    def _failure(order: OrderRequest, mode: TradingMode, started: float, attempts: int, error: str) -> ExecutionResult:
        return ExecutionResult(
            success         = False,
            symbol          = order.symbol,
            side            = order.side.value,
            client_order_id = order.client_order_id,
            notional        = order.notional,
            latency_ms      = (time.monotonic() - started) * 1000,
            order_status    = "failed",
            error           = error,
            mode            = mode,
            attempts        = attempts,
        )

    # ── Pass-throughs ───────────────────────────────────────────────────────

    async def cancel_order(self, order_id: str) -> bool:
        try:
            return await self.broker.cancel_order(order_id)
        except BrokerException as e:
            logger.error(f"Cancel failed for {order_id}: {e}")
            return False

    async def get_order_status(self, order_id: str) -> Optional[BrokerOrder]:
        try:
            return await self.broker.get_order(order_id)
        except BrokerException as e:
            logger.error(f"Status lookup failed for {order_id}: {e}")
            return None
