"""
Trading Cycle Orchestrator
==========================
Runs one decision cycle per symbol:

  SIGNAL -> RISK -> (REJECTED | HOLD | EXECUTE) -> RECORD -> DONE
  any step -> ERROR (partial results kept, reason "Cycle error: ...")

Expected outcomes (rejection, hold, failed execution) come back as typed
results; only unexpected faults are caught here, once, at the boundary.
The EXECUTE + RECORD step is shielded: a cancelled cycle lets the in-flight
submission and its records finish before the cancellation propagates.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from agents.strategy import SignalProvider
from core.analytics import AnalyticsRecorder
from core.audit import audit_cycle
from core.config import ExecutionContext
from core.learning_engine import LearningEngine
from core.risk_engine import RiskEngine
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.events.schemas import (
    CycleResult, CycleState, CycleStatus, ExecutionResult, LearningSample,
    PriceBar, RiskDecision, Signal, SignalAction, TradeRecord, utcnow,
)
from trading_interface.execution.router import ExecutionRouter

logger = logging.getLogger("CycleOrchestrator")


class TradingCycleOrchestrator:
    def __init__(
        self,
        broker: AbstractBrokerAPI,
        signal_provider: SignalProvider,
        risk_engine: RiskEngine,
        router: ExecutionRouter,
        analytics: AnalyticsRecorder,
        learning: LearningEngine,
        default_context: Optional[ExecutionContext] = None,
        bar_limit: int = 100,
    ):
        self.broker          = broker
        self.signal_provider = signal_provider
        self.risk_engine     = risk_engine
        self.router          = router
        self.analytics       = analytics
        self.learning        = learning
        self.default_context = default_context or ExecutionContext()
        self.bar_limit       = bar_limit

    async def run_cycle(
        self,
        symbol: str,
        price_history: Optional[Sequence[PriceBar]] = None,
        strategy_hint: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
        risk_overrides: Optional[Dict[str, Any]] = None,
    ) -> CycleResult:
        started_at = utcnow()
        t0 = time.monotonic()
        state = CycleState.SIGNAL
        partial: Dict[str, Any] = {}

        def finish(status: CycleStatus, final_state: CycleState, reason: str, error: Optional[str] = None) -> CycleResult:
            result = CycleResult(
                symbol        = symbol,
                status        = status,
                state         = final_state,
                reason        = reason or status.value,
                started_at    = started_at,
                cycle_time_ms = (time.monotonic() - t0) * 1000,
                error         = error,
                **partial,
            )
            logger.info(f"CYCLE {status.value.upper()}: {symbol} [{final_state.value}] {result.reason}")
            audit_cycle(result)
            return result

        try:
            # ── SIGNAL ──────────────────────────────────────────────────────
            if price_history is None:
                price_history = await self.broker.get_bars(symbol, self.bar_limit)
            signal = self.signal_provider.generate(symbol, price_history, strategy_hint)
            partial["signal"] = signal

            # ── RISK ────────────────────────────────────────────────────────
            state = CycleState.RISK
            config = self.risk_engine.config.merged(risk_overrides)
            decision = await self.risk_engine.evaluate_live(signal, self.broker, config)
            partial["risk_decision"] = decision

            if signal.action == SignalAction.HOLD:
                return finish(CycleStatus.HOLD, CycleState.HOLD, decision.reason)
            if not decision.approved:
                return finish(CycleStatus.REJECTED, CycleState.REJECTED, decision.reason)

            # ── EXECUTE + RECORD (shielded) ─────────────────────────────────
            state = CycleState.EXECUTE
            inner = asyncio.ensure_future(
                self._execute_and_record(signal, decision, context or self.default_context, partial)
            )
            try:
                execution = await asyncio.shield(inner)
            except asyncio.CancelledError:
                logger.warning(f"Cycle for {symbol} cancelled mid-execution; finishing submission and records")
                await inner
                raise

            if execution.success:
                reason = (
                    f"Executed {execution.side} {symbol}: order {execution.order_id or execution.client_order_id} "
                    f"({execution.order_status})"
                )
                return finish(CycleStatus.EXECUTED, CycleState.DONE, reason)
            return finish(
                CycleStatus.ERROR, CycleState.DONE,
                execution.error or "Execution failed", error=execution.error,
            )

        except Exception as e:
            logger.exception(f"Cycle error for {symbol} at {state.value}: {e}")
            return finish(CycleStatus.ERROR, CycleState.ERROR, f"Cycle error: {e}", error=str(e))

    async def _execute_and_record(
        self,
        signal: Signal,
        decision: RiskDecision,
        context: ExecutionContext,
        partial: Dict[str, Any],
    ) -> ExecutionResult:
        execution = await self.router.execute(signal, decision, context)
        partial["execution_result"] = execution

        # ── RECORD: analytics and learning fail independently ──────────────
        record, sample = await self._record(signal, execution, decision.metrics.portfolio_value)
        if record is not None:
            partial["trade_record"] = record
        if sample is not None:
            partial["learning_sample"] = sample
        return execution

    async def _record(
        self, signal: Signal, execution: ExecutionResult, portfolio_value: float
    ) -> Tuple[Optional[TradeRecord], Optional[LearningSample]]:
        record, sample = await asyncio.gather(
            self.analytics.record_execution(signal, execution, portfolio_value),
            self.learning.record_outcome(signal, execution),
            return_exceptions=True,
        )
        if isinstance(record, Exception):
            logger.error(f"Trade record for {signal.symbol} not persisted: {record}")
            record = None
        if isinstance(sample, Exception):
            logger.error(f"Learning update for {signal.symbol} failed: {sample}")
            sample = None
        return record, sample

    async def run_many(self, symbols: List[str], **kwargs) -> List[CycleResult]:
        """Independent cycles, one per symbol, run concurrently."""
        logger.info(f"Running {len(symbols)} cycles concurrently: {symbols}")
        return list(await asyncio.gather(*(self.run_cycle(symbol, **kwargs) for symbol in symbols)))
