"""
Analytics Recorder
==================
Turns each ExecutionResult into a TradeRecord (trade history row) and persists it.

Execution quality:
  EXCELLENT  latency < 500ms  and slippage < 0.5%
  GOOD       latency < 1000ms and slippage < 1%
  FAIR       latency < 2000ms and slippage < 2%
  POOR       anything else, and every failed execution
"""
import logging
from collections import Counter
from typing import Any, Dict, Optional

from core.store import AbstractTradingStore, StoreError
from trading_interface.events.schemas import ExecutionResult, Signal, TradeRecord

logger = logging.getLogger("AnalyticsRecorder")

QUALITY_BANDS = (
    ("EXCELLENT", 500, 0.005),
    ("GOOD", 1000, 0.01),
    ("FAIR", 2000, 0.02),
)


def slippage_pct(expected_price: Optional[float], filled_price: Optional[float]) -> float:
    """Relative distance of the fill from the signal's reference price; 0 when either is unknown."""
    if not expected_price or not filled_price:
        return 0.0
    return abs(filled_price - expected_price) / expected_price


def classify_execution_quality(result: ExecutionResult, expected_price: Optional[float] = None) -> str:
    if not result.success:
        return "POOR"
    slippage = slippage_pct(expected_price, result.filled_price)
    for label, max_latency, max_slippage in QUALITY_BANDS:
        if result.latency_ms < max_latency and slippage < max_slippage:
            return label
    return "POOR"


class AnalyticsRecorder:
    def __init__(self, store: AbstractTradingStore):
        self.store = store

    def build_record(self, signal: Signal, result: ExecutionResult, portfolio_value: float = 0.0) -> TradeRecord:
        if not result.success:
            status = "REJECTED"
        elif result.order_status == "filled":
            status = "FILLED"
        else:
            status = "ACCEPTED"

        quantity = result.filled_quantity or 0.0
        price    = result.filled_price or signal.current_price or 0.0
        notional = result.notional or quantity * price

        return TradeRecord(
            symbol            = result.symbol,
            side              = result.side,
            strategy_id       = signal.strategy_id,
            status            = status,
            order_id          = result.order_id,
            client_order_id   = result.client_order_id,
            quantity          = quantity,
            price             = price,
            notional          = notional,
            latency_ms        = result.latency_ms,
            execution_quality = classify_execution_quality(result, signal.current_price),
            confidence        = signal.confidence,
            risk_score        = signal.risk_score,
            portfolio_value   = portfolio_value,
            mode              = result.mode,
            error             = result.error,
        )

    async def record_execution(self, signal: Signal, result: ExecutionResult, portfolio_value: float = 0.0) -> TradeRecord:
        """
        Persists the trade record. Store failures propagate as StoreError so the
        orchestrator can log them without blocking the learning write.
        """
        record = self.build_record(signal, result, portfolio_value)
        await self.store.append_trade_record(record)
        logger.info(
            f"TRADE RECORDED: {record.symbol} {record.side} {record.status} "
            f"quality={record.execution_quality} latency={record.latency_ms:.0f}ms"
        )
        return record

    async def performance_summary(self, limit: int = 1000) -> Optional[Dict[str, Any]]:
        """Aggregate view over the most recent trades; None when there is no history."""
        try:
            trades = await self.store.recent_trades(limit)
        except StoreError as e:
            logger.error(f"Failed to load trade history: {e}")
            return None
        if not trades:
            return None

        successful = [t for t in trades if t.status in ("FILLED", "ACCEPTED")]
        strategy_breakdown: Dict[str, Dict[str, int]] = {}
        for t in trades:
            entry = strategy_breakdown.setdefault(t.strategy_id, {"trades": 0, "success": 0})
            entry["trades"] += 1
            if t.status in ("FILLED", "ACCEPTED"):
                entry["success"] += 1

        return {
            "total_trades":       len(trades),
            "successful_trades":  len(successful),
            "failed_trades":      len(trades) - len(successful),
            "success_rate":       len(successful) / len(trades) * 100,
            "total_volume":       sum(t.notional for t in trades),
            "average_latency_ms": sum(t.latency_ms for t in trades) / len(trades),
            "quality_breakdown":  dict(Counter(t.execution_quality for t in trades)),
            "strategy_breakdown": strategy_breakdown,
        }
