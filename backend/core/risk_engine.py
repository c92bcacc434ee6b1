"""
Portfolio Risk Engine
=====================
Deterministic pre-trade gate between the signal providers and the ExecutionRouter.

Gates run in a fixed priority order:
  0. HOLD signal          -> not approved, LOW (normal outcome, not a fault)
  1. Drawdown breach      -> CRITICAL
  2. Exposure breach      -> CRITICAL
  3. Daily loss limit     -> CRITICAL
  4. Buying power         -> CRITICAL
  5. Trading blocked      -> CRITICAL
  6. Soft checks          -> warnings (confidence, position size, stop loss)
     Missing stop loss blocks only when require_stop_loss is set;
     the open-position limit always blocks.

The engine is a pure function of its inputs apart from the peak-value watermark,
which only feeds the informational `peak_drawdown` metric.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from core.config import RiskConfig
from core.portfolio_state import PortfolioState
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.events.schemas import (
    RiskDecision, RiskLevel, RiskMetrics, Signal, SignalAction,
)

logger = logging.getLogger("RiskEngine")

KELLY_FLOOR    = 0.10
KELLY_CAP      = 0.25
CASH_USAGE_CAP = 0.80


class HardConstraintViolation(Exception):
    def __init__(
        self,
        metric: str,
        reason: str,
        risk_level: RiskLevel = RiskLevel.CRITICAL,
        warnings: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None,
    ):
        self.metric          = metric
        self.reason          = reason
        self.risk_level      = risk_level
        self.warnings        = warnings or []
        self.recommendations = recommendations or []
        super().__init__(reason)


class PeakValueTracker:
    """
    High-water mark of portfolio value for the life of the process.
    Monotonically non-decreasing; shared by concurrent cycles.
    """

    def __init__(self, initial_peak: float = 0.0):
        self._lock = threading.Lock()
        self._peak = max(0.0, initial_peak)
        self._max_drawdown = 0.0

    @property
    def peak(self) -> float:
        return self._peak

    @property
    def max_drawdown(self) -> float:
        return self._max_drawdown

    def observe(self, portfolio_value: float) -> float:
        """Records a portfolio value and returns the current drawdown from peak."""
        with self._lock:
            if portfolio_value > self._peak:
                self._peak = portfolio_value
            if self._peak <= 0:
                return 0.0
            drawdown = max(0.0, (self._peak - portfolio_value) / self._peak)
            self._max_drawdown = max(self._max_drawdown, drawdown)
            return drawdown

    def restore(self, peak: float) -> None:
        with self._lock:
            self._peak = max(self._peak, peak)


def kelly_fraction(confidence: float) -> float:
    """Simplified Kelly f = 2p - 1, capped to [10%, 25%] of the portfolio."""
    return max(KELLY_FLOOR, min(2 * confidence - 1, KELLY_CAP))


def estimate_position_size(confidence: float, cash: float, portfolio_value: float) -> float:
    size = portfolio_value * kelly_fraction(confidence)
    return max(0.0, min(size, cash * CASH_USAGE_CAP))


class RiskEngine:
    """One engine, injected config and watermark; no module-level state."""

    def __init__(self, config: Optional[RiskConfig] = None, peak_tracker: Optional[PeakValueTracker] = None):
        self.config = config or RiskConfig()
        self.peak_tracker = peak_tracker or PeakValueTracker()

    def update_config(self, overrides: Dict[str, Any]) -> RiskConfig:
        self.config = self.config.merged(overrides)
        logger.info(f"Risk config updated: {overrides}")
        return self.config

    def get_config(self) -> RiskConfig:
        return self.config.model_copy()

    # ── Metrics ────────────────────────────────────────────────────────────

    def compute_metrics(self, signal: Signal, portfolio: PortfolioState) -> RiskMetrics:
        portfolio_value = portfolio.portfolio_value
        estimated = estimate_position_size(signal.confidence, portfolio.account.cash, portfolio_value)
        return RiskMetrics(
            drawdown                = portfolio.drawdown_pct,
            exposure                = portfolio.exposure_pct,
            position_size_percent   = estimated / portfolio_value if portfolio_value > 0 else 0.0,
            daily_pnl_percent       = portfolio.daily_pnl_pct,
            open_position_count     = portfolio.open_position_count,
            available_buying_power  = portfolio.account.buying_power,
            portfolio_value         = portfolio_value,
            estimated_position_size = estimated,
            peak_drawdown           = self.peak_tracker.observe(portfolio_value),
        )

    # ── Evaluation ─────────────────────────────────────────────────────────

    def evaluate(
        self,
        signal: Signal,
        portfolio: PortfolioState,
        config: Optional[RiskConfig] = None,
    ) -> RiskDecision:
        """
        Runs all gates in priority order.
        Returns an approved RiskDecision or the first violated gate as a rejection.
        """
        cfg = config or self.config
        metrics = self.compute_metrics(signal, portfolio)
        warnings: List[str] = []
        recommendations: List[str] = []

        try:
            # ── Gate 0: HOLD is a normal outcome ─────────────────────────────
            if signal.action == SignalAction.HOLD:
                raise HardConstraintViolation(
                    "HOLD", "Signal recommends HOLD", RiskLevel.LOW,
                    ["No clear trading signal"], ["Wait for clearer market conditions"],
                )

            # ── Gates 1-5: critical portfolio conditions ────────────────────
            self._check_drawdown(metrics, cfg)
            self._check_exposure(metrics, cfg)
            self._check_daily_loss(metrics, cfg)
            self._check_buying_power(metrics)
            self._check_trading_blocked(portfolio)

            # ── Gate 6: soft checks ─────────────────────────────────────────
            if signal.confidence < cfg.min_confidence:
                warnings.append(f"Low confidence signal: {signal.confidence * 100:.0f}%")
                recommendations.append("Consider waiting for stronger signal")

            if metrics.position_size_percent > cfg.max_position_size:
                warnings.append(f"Position size too large: {metrics.position_size_percent * 100:.2f}%")
                recommendations.append(f"Reduce position to max {cfg.max_position_size * 100:.0f}%")

            if signal.stop_loss <= 0:
                warnings.append("No stop loss defined")
                recommendations.append("Add stop loss protection")
                if cfg.require_stop_loss:
                    raise HardConstraintViolation(
                        "STOP_LOSS", "Stop loss required but not set", RiskLevel.HIGH,
                        warnings, recommendations,
                    )

            if metrics.open_position_count >= cfg.max_open_positions:
                raise HardConstraintViolation(
                    "OPEN_POSITIONS",
                    f"Maximum open positions reached: {metrics.open_position_count}",
                    RiskLevel.MEDIUM,
                    warnings + ["Too many open positions"],
                    ["Close some positions before opening new ones"],
                )

        except HardConstraintViolation as v:
            log = logger.info if v.risk_level == RiskLevel.LOW else logger.warning
            log(f"RISK GATE: [{v.metric}] {signal.symbol} {v.reason}")
            return RiskDecision(
                approved        = False,
                risk_level      = v.risk_level,
                reason          = v.reason,
                warnings        = v.warnings,
                metrics         = metrics,
                recommendations = v.recommendations,
            )

        level = self._approved_risk_level(metrics, cfg)
        logger.info(
            f"RISK APPROVED: {signal.symbol} {signal.action.value} level={level.value} "
            f"size={metrics.position_size_percent * 100:.1f}% warnings={len(warnings)}"
        )
        return RiskDecision(
            approved        = True,
            risk_level      = level,
            reason          = "All risk checks passed",
            warnings        = warnings,
            metrics         = metrics,
            recommendations = recommendations or ["Trade within normal parameters"],
        )

    async def evaluate_live(
        self,
        signal: Signal,
        broker: AbstractBrokerAPI,
        config: Optional[RiskConfig] = None,
    ) -> RiskDecision:
        """
        Fetches a consistent account/positions snapshot and evaluates against it.
        A broker failure is a CRITICAL rejection, not an exception.
        """
        try:
            account   = await broker.get_account()
            positions = await broker.get_positions()
        except Exception as e:
            if signal.action == SignalAction.HOLD:
                return RiskDecision(
                    approved        = False,
                    risk_level      = RiskLevel.LOW,
                    reason          = "Signal recommends HOLD",
                    warnings        = ["No clear trading signal", "Account data unavailable"],
                    recommendations = ["Wait for clearer market conditions"],
                )
            logger.error(f"Unable to fetch account data for {signal.symbol}: {e}")
            return RiskDecision(
                approved        = False,
                risk_level      = RiskLevel.CRITICAL,
                reason          = "Unable to fetch account data",
                warnings        = ["Account data unavailable"],
                recommendations = ["Check broker API connection"],
            )

        return self.evaluate(signal, PortfolioState(account=account, positions=positions), config)

    # ── Gate implementations ────────────────────────────────────────────────

    def _check_drawdown(self, metrics: RiskMetrics, cfg: RiskConfig):
        if metrics.drawdown > cfg.max_drawdown:
            raise HardConstraintViolation(
                "DRAWDOWN",
                f"Drawdown breach: {metrics.drawdown * 100:.2f}% exceeds max {cfg.max_drawdown * 100:.0f}%",
                warnings=["Trading suspended due to drawdown"],
                recommendations=["Reduce position sizes", "Review stop losses", "Wait for market recovery"],
            )

    def _check_exposure(self, metrics: RiskMetrics, cfg: RiskConfig):
        if metrics.exposure > cfg.max_exposure:
            raise HardConstraintViolation(
                "EXPOSURE",
                f"Exposure too high: {metrics.exposure * 100:.2f}% exceeds max {cfg.max_exposure * 100:.0f}%",
                warnings=["Portfolio overexposed"],
                recommendations=["Close some positions", "Reduce position sizes"],
            )

    def _check_daily_loss(self, metrics: RiskMetrics, cfg: RiskConfig):
        if metrics.daily_pnl_percent < -cfg.max_daily_loss:
            raise HardConstraintViolation(
                "DAILY_LOSS",
                f"Daily loss limit reached: {metrics.daily_pnl_percent * 100:.2f}% loss",
                warnings=["Daily loss limit exceeded"],
                recommendations=["Stop trading for today", "Review strategy performance"],
            )

    def _check_buying_power(self, metrics: RiskMetrics):
        if metrics.available_buying_power < metrics.estimated_position_size:
            raise HardConstraintViolation(
                "BUYING_POWER",
                f"Insufficient buying power: need ${metrics.estimated_position_size:,.0f}, "
                f"have ${metrics.available_buying_power:,.0f}",
                warnings=["Not enough buying power for this trade"],
                recommendations=["Reduce position size", "Close losing positions to free up capital"],
            )

    def _check_trading_blocked(self, portfolio: PortfolioState):
        if portfolio.account.trading_blocked:
            raise HardConstraintViolation(
                "TRADING_BLOCKED",
                "Trading blocked on account",
                warnings=["Account trading restrictions"],
                recommendations=["Contact broker support"],
            )

    @staticmethod
    def _approved_risk_level(metrics: RiskMetrics, cfg: RiskConfig) -> RiskLevel:
        if metrics.drawdown > cfg.max_drawdown * 0.8 or metrics.exposure > cfg.max_exposure * 0.8:
            return RiskLevel.HIGH
        if metrics.drawdown > cfg.max_drawdown * 0.6 or metrics.exposure > cfg.max_exposure * 0.6:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW
