"""
Learning Engine
===============
Scores every executed signal against its outcome and keeps a rolling
per-strategy performance aggregate.

  predicted = +confidence (BUY), -confidence (SELL), 0 (HOLD)
  actual    = +1 if the execution succeeded, else -1
  accuracy  = 1 when the signs agree, 0 when they are opposite, 0.5 otherwise

Aggregates live in memory for fast reads and are rebuilt from the store at
startup. A failed store write never fails the cycle; the sample is queued in
`pending_replay` and retried by `replay_pending()`.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from core.store import AbstractTradingStore, StoreError
from trading_interface.events.schemas import (
    ExecutionResult, LearningSample, Signal, SignalAction, StrategyPerformance,
)

logger = logging.getLogger("LearningEngine")

HISTORY_SIZE = 1000


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def predicted_outcome(signal: Signal) -> float:
    if signal.action == SignalAction.BUY:
        return signal.confidence
    if signal.action == SignalAction.SELL:
        return -signal.confidence
    return 0.0


def outcome_accuracy(predicted: float, actual: float) -> float:
    p, a = _sign(predicted), _sign(actual)
    if p == a:
        return 1.0
    if p * a < 0:
        return 0.0
    return 0.5


def estimate_pnl(signal: Signal, result: ExecutionResult) -> Optional[float]:
    if result.filled_price is None or result.filled_quantity is None:
        return None
    direction = {SignalAction.BUY: 1, SignalAction.SELL: -1}.get(signal.action)
    if direction is None:
        return None
    return result.filled_price * result.filled_quantity * direction


def strategy_recommendations(perf: StrategyPerformance) -> List[str]:
    recs = []
    if perf.accuracy < 50:
        recs.append("Strategy accuracy is below 50% - consider reviewing parameters")
    if perf.average_confidence < 0.6:
        recs.append("Average confidence is low - consider stronger signal thresholds")
    if perf.average_pnl < 0:
        recs.append("Strategy is losing money on average - consider disabling or adjusting")
    elif perf.average_pnl > 0:
        recs.append("Strategy is profitable - consider increasing position sizes")
    if perf.accuracy > 70 and perf.average_pnl > 0:
        recs.append("Excellent performance - this strategy is working well")
    return recs


class LearningEngine:
    def __init__(self, store: AbstractTradingStore, history_size: int = HISTORY_SIZE):
        self.store = store
        self.history_size = history_size
        self._performance: Dict[str, StrategyPerformance] = {}
        self._history: Dict[str, Deque[LearningSample]] = {}
        self._lock = asyncio.Lock()
        self.pending_replay: List[LearningSample] = []

    def build_sample(
        self,
        signal: Signal,
        result: ExecutionResult,
        context: Optional[Dict[str, Any]] = None,
    ) -> LearningSample:
        predicted = predicted_outcome(signal)
        actual = 1.0 if result.success else -1.0
        pnl = (context or {}).get("pnl", estimate_pnl(signal, result))
        return LearningSample(
            symbol            = signal.symbol,
            strategy_id       = signal.strategy_id,
            signal_confidence = signal.confidence,
            signal_action     = signal.action,
            execution_success = result.success,
            predicted_outcome = predicted,
            actual_outcome    = actual,
            accuracy          = outcome_accuracy(predicted, actual),
            risk_score        = signal.risk_score,
            pnl               = pnl,
        )

    async def record_outcome(
        self,
        signal: Signal,
        result: ExecutionResult,
        context: Optional[Dict[str, Any]] = None,
    ) -> LearningSample:
        sample = self.build_sample(signal, result, context)

        try:
            await self.store.append_learning_sample(sample)
        except StoreError as e:
            logger.error(f"Learning sample for {sample.strategy_id}/{sample.symbol} not persisted: {e}")
            sample = sample.model_copy(update={"persisted": False})
            self.pending_replay.append(sample)

        await self._apply(sample)
        logger.info(
            f"LEARNING: {sample.strategy_id} {sample.symbol} accuracy={sample.accuracy} "
            f"success={sample.execution_success}"
        )
        return sample

    async def _apply(self, sample: LearningSample) -> None:
        async with self._lock:
            perf = self._performance.get(sample.strategy_id) or StrategyPerformance(strategy_id=sample.strategy_id)
            n = perf.total_signals
            total = n + 1
            successful = perf.successful_signals + (1 if sample.execution_success else 0)
            updated = StrategyPerformance(
                strategy_id        = sample.strategy_id,
                total_signals      = total,
                successful_signals = successful,
                accuracy           = successful / total * 100,
                average_confidence = (perf.average_confidence * n + sample.signal_confidence) / total,
                average_pnl        = (perf.average_pnl * n + (sample.pnl or 0.0)) / total,
            )
            updated.recommendations = strategy_recommendations(updated)
            self._performance[sample.strategy_id] = updated

            ring = self._history.setdefault(sample.strategy_id, deque(maxlen=self.history_size))
            ring.append(sample)

    async def replay_pending(self) -> int:
        """Retries persisting queued samples. Returns how many were written."""
        if not self.pending_replay:
            return 0
        queued, self.pending_replay = self.pending_replay, []
        written = 0
        for sample in queued:
            try:
                await self.store.append_learning_sample(sample.model_copy(update={"persisted": True}))
                written += 1
            except StoreError as e:
                logger.warning(f"Replay failed for {sample.strategy_id}/{sample.symbol}: {e}")
                self.pending_replay.append(sample)
        logger.info(f"Replayed {written}/{len(queued)} pending learning samples")
        return written

    async def reload_from_store(self) -> int:
        """Rebuilds aggregates and history from persisted samples. Returns the strategy count."""
        strategy_ids = await self.store.load_strategy_ids()
        performance: Dict[str, StrategyPerformance] = {}
        history: Dict[str, Deque[LearningSample]] = {}
        for strategy_id in strategy_ids:
            perf = await self.store.load_strategy_aggregate(strategy_id)
            if perf is None:
                continue
            perf.recommendations = strategy_recommendations(perf)
            performance[strategy_id] = perf
            samples = await self.store.recent_samples(strategy_id, self.history_size)
            history[strategy_id] = deque(samples, maxlen=self.history_size)

        async with self._lock:
            self._performance = performance
            self._history = history
        logger.info(f"Learning aggregates reloaded for {len(performance)} strategies")
        return len(performance)

    def get_strategy_performance(self, strategy_id: str) -> Optional[StrategyPerformance]:
        return self._performance.get(strategy_id)

    def strategy_comparison(self) -> List[StrategyPerformance]:
        return sorted(self._performance.values(), key=lambda p: p.accuracy, reverse=True)

    def history(self, strategy_id: Optional[str] = None) -> List[LearningSample]:
        if strategy_id is not None:
            return list(self._history.get(strategy_id, ()))
        merged = [s for ring in self._history.values() for s in ring]
        return sorted(merged, key=lambda s: s.timestamp)

    def clear_cache(self) -> None:
        self._performance.clear()
        self._history.clear()
        logger.info("Learning cache cleared")
