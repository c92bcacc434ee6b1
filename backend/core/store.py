"""
Persistent Trading Store
========================
Async store interface used by the Analytics Recorder and the Learning Engine,
plus the SQLAlchemy implementation. Blocking session work runs in the default
thread pool (run_in_executor) so the event loop never waits on the database.
"""
import abc
import asyncio
import logging
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core.database import StoredLearningSample, StoredTradeRecord
from trading_interface.events.schemas import (
    LearningSample, SignalAction, StrategyPerformance, TradeRecord, TradingMode,
)

logger = logging.getLogger("TradingStore")

T = TypeVar("T")


class StoreError(Exception):
    """A persistence operation failed; callers degrade instead of crashing the cycle."""
    pass


class AbstractTradingStore(abc.ABC):

    @abc.abstractmethod
    async def append_trade_record(self, record: TradeRecord) -> None:
        pass

    @abc.abstractmethod
    async def append_learning_sample(self, sample: LearningSample) -> None:
        pass

    @abc.abstractmethod
    async def load_strategy_aggregate(self, strategy_id: str) -> Optional[StrategyPerformance]:
        """Rebuilds the rolling aggregate for one strategy from its samples; None if unseen."""
        pass

    @abc.abstractmethod
    async def load_strategy_ids(self) -> List[str]:
        pass

    @abc.abstractmethod
    async def load_peak_portfolio_value(self) -> float:
        pass

    @abc.abstractmethod
    async def recent_trades(self, limit: int = 50) -> List[TradeRecord]:
        pass

    async def recent_samples(self, strategy_id: Optional[str] = None, limit: int = 1000) -> List[LearningSample]:
        return []


class SqlTradingStore(AbstractTradingStore):

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def _work() -> T:
            db = self.session_factory()
            try:
                result = fn(db)
                db.commit()
                return result
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Store operation failed: {e}")
                raise StoreError(str(e)) from e
            finally:
                db.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _work)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def append_trade_record(self, record: TradeRecord) -> None:
        row = StoredTradeRecord(**{**record.model_dump(), "mode": record.mode.value})
        await self._run(lambda db: db.add(row))

    async def append_learning_sample(self, sample: LearningSample) -> None:
        row = StoredLearningSample(
            symbol            = sample.symbol,
            strategy_id       = sample.strategy_id,
            signal_confidence = sample.signal_confidence,
            signal_action     = sample.signal_action.value,
            execution_success = sample.execution_success,
            predicted_outcome = sample.predicted_outcome,
            actual_outcome    = sample.actual_outcome,
            accuracy          = sample.accuracy,
            risk_score        = sample.risk_score,
            pnl               = sample.pnl,
            timestamp         = sample.timestamp,
        )
        await self._run(lambda db: db.add(row))

    # ── Reads ───────────────────────────────────────────────────────────────

    async def load_strategy_aggregate(self, strategy_id: str) -> Optional[StrategyPerformance]:
        def _query(db: Session) -> Optional[StrategyPerformance]:
            total, successes, avg_conf, avg_pnl = (
                db.query(
                    func.count(StoredLearningSample.id),
                    func.sum(case((StoredLearningSample.execution_success, 1), else_=0)),
                    func.avg(StoredLearningSample.signal_confidence),
                    func.avg(func.coalesce(StoredLearningSample.pnl, 0.0)),
                )
                .filter(StoredLearningSample.strategy_id == strategy_id)
                .one()
            )
            if not total:
                return None
            successes = int(successes or 0)
            return StrategyPerformance(
                strategy_id        = strategy_id,
                total_signals      = total,
                successful_signals = successes,
                accuracy           = successes / total * 100,
                average_confidence = float(avg_conf or 0.0),
                average_pnl        = float(avg_pnl or 0.0),
            )

        return await self._run(_query)

    async def load_strategy_ids(self) -> List[str]:
        def _query(db: Session) -> List[str]:
            rows = db.query(StoredLearningSample.strategy_id).distinct().all()
            return [r[0] for r in rows]

        return await self._run(_query)

    async def load_peak_portfolio_value(self) -> float:
        def _query(db: Session) -> float:
            return float(db.query(func.max(StoredTradeRecord.portfolio_value)).scalar() or 0.0)

        return await self._run(_query)

    async def recent_trades(self, limit: int = 50) -> List[TradeRecord]:
        def _query(db: Session) -> List[TradeRecord]:
            rows = (
                db.query(StoredTradeRecord)
                .order_by(StoredTradeRecord.recorded_at.desc(), StoredTradeRecord.id.desc())
                .limit(limit)
                .all()
            )
            return [
                TradeRecord(
                    symbol            = r.symbol,
                    side              = r.side,
                    strategy_id       = r.strategy_id,
                    status            = r.status,
                    order_id          = r.order_id,
                    client_order_id   = r.client_order_id,
                    quantity          = r.quantity or 0.0,
                    price             = r.price or 0.0,
                    notional          = r.notional or 0.0,
                    latency_ms        = r.latency_ms or 0.0,
                    execution_quality = r.execution_quality,
                    confidence        = r.confidence or 0.0,
                    risk_score        = r.risk_score or 0.0,
                    portfolio_value   = r.portfolio_value or 0.0,
                    mode              = TradingMode(r.mode or "paper"),
                    error             = r.error,
                    recorded_at       = r.recorded_at,
                )
                for r in rows
            ]

        return await self._run(_query)

    async def recent_samples(self, strategy_id: Optional[str] = None, limit: int = 1000) -> List[LearningSample]:
        def _query(db: Session) -> List[LearningSample]:
            q = db.query(StoredLearningSample)
            if strategy_id:
                q = q.filter(StoredLearningSample.strategy_id == strategy_id)
            rows = q.order_by(StoredLearningSample.id.desc()).limit(limit).all()
            return [
                LearningSample(
                    symbol            = r.symbol,
                    strategy_id       = r.strategy_id,
                    signal_confidence = r.signal_confidence,
                    signal_action     = SignalAction(r.signal_action),
                    execution_success = r.execution_success,
                    predicted_outcome = r.predicted_outcome,
                    actual_outcome    = r.actual_outcome,
                    accuracy          = r.accuracy,
                    risk_score        = r.risk_score or 0.0,
                    pnl               = r.pnl,
                    timestamp         = r.timestamp,
                )
                for r in reversed(rows)
            ]

        return await self._run(_query)
