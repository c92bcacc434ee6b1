"""
Signal Providers
================
Stateless technical strategies scored on a pandas frame of daily bars:

  momentum        20-bar rate of change confirmed by price vs SMA20
  mean_reversion  z-score of close vs its 20-bar mean, confirmed by RSI(14)
  breakout        close through the prior 20-bar range on above-average volume

TechnicalSignalProvider runs one strategy. MultiStrategySignalProvider runs all
of them and scores the consensus with a ConsensusPolicy.

Not enough history always yields HOLD; a provider never raises on short data.
"""
import abc
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd

from core.config import ConsensusPolicy
from trading_interface.events.schemas import PriceBar, Signal, SignalAction

logger = logging.getLogger("SignalProvider")

MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class StrategyOutcome:
    action: SignalAction
    confidence: float
    reason: str


def bars_to_frame(price_history: Sequence[PriceBar]) -> pd.DataFrame:
    df = pd.DataFrame([bar.model_dump() for bar in price_history])
    if df.empty:
        return df
    return df.sort_values("timestamp").reset_index(drop=True)


def _hold(reason: str) -> StrategyOutcome:
    return StrategyOutcome(SignalAction.HOLD, 0.0, reason)


def _clamp_confidence(value: float) -> float:
    return max(0.0, min(value, MAX_CONFIDENCE))


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    delta = close.diff()
    gain = delta.clip(lower=0).rolling(window=period).mean()
    loss = (-delta.clip(upper=0)).rolling(window=period).mean()
    return 100 - 100 / (1 + gain / loss)


# ── Strategies ──────────────────────────────────────────────────────────────

def momentum(df: pd.DataFrame, lookback: int = 20, threshold: float = 0.02) -> StrategyOutcome:
    if len(df) <= lookback:
        return _hold(f"Insufficient history for momentum ({len(df)} bars)")

    close = df["close"]
    price = float(close.iloc[-1])
    roc = price / float(close.iloc[-1 - lookback]) - 1
    sma = float(close.rolling(window=lookback).mean().iloc[-1])

    confidence = _clamp_confidence(0.5 + abs(roc) * 5)
    if roc > threshold and price > sma:
        return StrategyOutcome(SignalAction.BUY, confidence, f"Momentum up {roc * 100:.1f}% over {lookback} bars")
    if roc < -threshold and price < sma:
        return StrategyOutcome(SignalAction.SELL, confidence, f"Momentum down {roc * 100:.1f}% over {lookback} bars")
    return _hold(f"No momentum ({roc * 100:.1f}% over {lookback} bars)")


def mean_reversion(df: pd.DataFrame, lookback: int = 20, entry_z: float = 2.0) -> StrategyOutcome:
    if len(df) < max(lookback, 15):
        return _hold(f"Insufficient history for mean reversion ({len(df)} bars)")

    close = df["close"]
    window = close.iloc[-lookback:]
    std = float(window.std())
    if std == 0:
        return _hold("Flat price series")

    z = (float(close.iloc[-1]) - float(window.mean())) / std
    last_rsi = float(rsi(close).iloc[-1])
    confidence = _clamp_confidence(0.5 + (abs(z) - 1) * 0.2)

    if z <= -entry_z and last_rsi < 35:
        return StrategyOutcome(SignalAction.BUY, confidence, f"Oversold: z={z:.2f}, RSI={last_rsi:.0f}")
    if z >= entry_z and last_rsi > 65:
        return StrategyOutcome(SignalAction.SELL, confidence, f"Overbought: z={z:.2f}, RSI={last_rsi:.0f}")
    return _hold(f"Within band: z={z:.2f}")


def breakout(df: pd.DataFrame, lookback: int = 20, volume_factor: float = 1.5) -> StrategyOutcome:
    if len(df) <= lookback:
        return _hold(f"Insufficient history for breakout ({len(df)} bars)")

    prior = df.iloc[-1 - lookback:-1]
    last = df.iloc[-1]
    avg_volume = float(prior["volume"].mean())
    volume_ratio = float(last["volume"]) / avg_volume if avg_volume > 0 else 1.0
    if volume_ratio < volume_factor:
        return _hold(f"Volume not confirming ({volume_ratio:.1f}x average)")

    confidence = _clamp_confidence(0.55 + (volume_ratio - volume_factor) * 0.1)
    if float(last["close"]) > float(prior["high"].max()):
        return StrategyOutcome(SignalAction.BUY, confidence, f"Breakout above {lookback}-bar high on {volume_ratio:.1f}x volume")
    if float(last["close"]) < float(prior["low"].min()):
        return StrategyOutcome(SignalAction.SELL, confidence, f"Breakdown below {lookback}-bar low on {volume_ratio:.1f}x volume")
    return _hold("Price inside prior range")


STRATEGY_REGISTRY: Dict[str, Callable[[pd.DataFrame], StrategyOutcome]] = {
    "momentum":       momentum,
    "mean_reversion": mean_reversion,
    "breakout":       breakout,
}


# ── Providers ───────────────────────────────────────────────────────────────

def protective_levels(price: Optional[float], action: SignalAction, policy: ConsensusPolicy):
    """Stop loss / take profit at the policy's percentages; 0 for HOLD or unknown price."""
    if not price or action == SignalAction.HOLD:
        return 0.0, 0.0
    if action == SignalAction.BUY:
        return price * (1 - policy.stop_loss_pct), price * (1 + policy.take_profit_pct)
    return price * (1 + policy.stop_loss_pct), price * (1 - policy.take_profit_pct)


class SignalProvider(abc.ABC):

    @abc.abstractmethod
    def generate(
        self,
        symbol: str,
        price_history: Sequence[PriceBar],
        strategy_hint: Optional[str] = None,
    ) -> Signal:
        pass


class TechnicalSignalProvider(SignalProvider):
    def __init__(self, strategy_id: str = "momentum", policy: Optional[ConsensusPolicy] = None):
        if strategy_id not in STRATEGY_REGISTRY:
            raise ValueError(f"Unknown strategy '{strategy_id}'")
        self.strategy_id = strategy_id
        self.policy = policy or ConsensusPolicy()

    def generate(self, symbol, price_history, strategy_hint=None) -> Signal:
        strategy_id = strategy_hint if strategy_hint in STRATEGY_REGISTRY else self.strategy_id
        df = bars_to_frame(price_history)
        outcome = STRATEGY_REGISTRY[strategy_id](df) if not df.empty else _hold("No price history")
        price = float(df["close"].iloc[-1]) if not df.empty else None
        stop_loss, take_profit = protective_levels(price, outcome.action, self.policy)

        logger.info(f"Generated {outcome.action.value} Signal for {symbol} via {strategy_id} with Confidence {outcome.confidence:.2f}")
        return Signal(
            symbol        = symbol,
            action        = outcome.action,
            confidence    = outcome.confidence,
            risk_score    = 1 - outcome.confidence,
            strategy_id   = strategy_id,
            stop_loss     = stop_loss,
            take_profit   = take_profit,
            reason        = outcome.reason,
            current_price = price,
        )


class MultiStrategySignalProvider(SignalProvider):
    """
    Runs every registered strategy and picks the strongest signal on the
    majority side. Agreement and market conditions scale its confidence.
    """

    def __init__(self, policy: Optional[ConsensusPolicy] = None, strategies: Optional[List[str]] = None):
        self.policy = policy or ConsensusPolicy()
        self.strategies = strategies or list(STRATEGY_REGISTRY)

    def market_multiplier(self, df: pd.DataFrame, action: SignalAction) -> float:
        close = df["close"]
        multiplier = 1.0
        if len(close) >= 50:
            trend_up = float(close.iloc[-1]) > float(close.rolling(window=50).mean().iloc[-1])
            aligned = (action == SignalAction.BUY) == trend_up
            multiplier *= self.policy.trend_aligned_multiplier if aligned else self.policy.counter_trend_multiplier
        volatility = close.pct_change().iloc[-20:].std()
        if pd.notna(volatility) and volatility > self.policy.high_volatility_threshold:
            multiplier *= self.policy.high_volatility_multiplier
        return multiplier

    def generate(self, symbol, price_history, strategy_hint=None) -> Signal:
        if strategy_hint in STRATEGY_REGISTRY:
            return TechnicalSignalProvider(strategy_hint, self.policy).generate(symbol, price_history)

        df = bars_to_frame(price_history)
        price = float(df["close"].iloc[-1]) if not df.empty else None
        outcomes = {
            sid: STRATEGY_REGISTRY[sid](df) if not df.empty else _hold("No price history")
            for sid in self.strategies
        }

        buys  = {sid: o for sid, o in outcomes.items() if o.action == SignalAction.BUY}
        sells = {sid: o for sid, o in outcomes.items() if o.action == SignalAction.SELL}

        if len(buys) == len(sells):
            reason = "Strategies disagree" if buys else "; ".join(o.reason for o in outcomes.values())
            logger.info(f"Generated HOLD Signal for {symbol} via consensus ({len(buys)} buy / {len(sells)} sell)")
            return Signal(
                symbol=symbol, action=SignalAction.HOLD, confidence=0.0, risk_score=1.0,
                strategy_id="consensus", reason=reason, current_price=price,
            )

        side = buys if len(buys) > len(sells) else sells
        best_id, best = max(side.items(), key=lambda item: item[1].confidence)

        confidence = best.confidence
        if len(side) >= 3:
            confidence *= self.policy.strong_confirmation_bonus
        elif len(side) == 2:
            confidence *= self.policy.confirmation_bonus
        confidence = _clamp_confidence(confidence * self.market_multiplier(df, best.action))

        stop_loss, take_profit = protective_levels(price, best.action, self.policy)
        logger.info(
            f"Generated {best.action.value} Signal for {symbol} via {best_id} "
            f"({len(side)}/{len(outcomes)} agree) with Confidence {confidence:.2f}"
        )
        return Signal(
            symbol        = symbol,
            action        = best.action,
            confidence    = confidence,
            risk_score    = 1 - confidence,
            strategy_id   = best_id,
            stop_loss     = stop_loss,
            take_profit   = take_profit,
            reason        = f"{best.reason} ({len(side)}/{len(outcomes)} strategies agree)",
            current_price = price,
        )
