import pytest

from conftest import make_bars
from agents.strategy import (
    MultiStrategySignalProvider, TechnicalSignalProvider, bars_to_frame, breakout, mean_reversion, momentum,
)
from core.config import ConsensusPolicy
from trading_interface.events.schemas import SignalAction

UPTREND = [100.0 + i for i in range(30)]
# steady climb then a gap up on triple volume
GAP_UP = [100.0 + i for i in range(29)] + [140.0]
GAP_UP_VOLUME = [1_000_000.0] * 29 + [3_000_000.0]


def frame(closes, volumes=None):
    return bars_to_frame(make_bars(closes, volumes))


class TestStrategies:

    def test_momentum_up_and_down(self):
        assert momentum(frame(UPTREND)).action == SignalAction.BUY
        assert momentum(frame(list(reversed(UPTREND)))).action == SignalAction.SELL

    def test_momentum_flat_holds(self):
        outcome = momentum(frame([100.0] * 30))
        assert outcome.action == SignalAction.HOLD
        assert outcome.confidence == 0.0

    @pytest.mark.parametrize("strategy", [momentum, mean_reversion, breakout])
    def test_short_history_holds(self, strategy):
        outcome = strategy(frame([100.0] * 5))
        assert outcome.action == SignalAction.HOLD
        assert "Insufficient history" in outcome.reason

    def test_mean_reversion_oversold(self):
        closes = [100.0, 101.0] * 17 + [90.0]
        outcome = mean_reversion(frame(closes))
        assert outcome.action == SignalAction.BUY
        assert outcome.reason.startswith("Oversold")

    def test_mean_reversion_overbought(self):
        outcome = mean_reversion(frame(GAP_UP))
        assert outcome.action == SignalAction.SELL

    def test_breakout_needs_volume(self):
        assert breakout(frame(GAP_UP)).action == SignalAction.HOLD
        outcome = breakout(frame(GAP_UP, GAP_UP_VOLUME))
        assert outcome.action == SignalAction.BUY
        assert outcome.confidence == pytest.approx(0.7)


class TestTechnicalSignalProvider:

    def test_signal_carries_protective_levels(self):
        signal = TechnicalSignalProvider("momentum").generate("AAPL", make_bars(UPTREND))
        assert signal.action == SignalAction.BUY
        assert signal.strategy_id == "momentum"
        assert signal.current_price == 129.0
        assert signal.stop_loss == pytest.approx(129.0 * 0.98)
        assert signal.take_profit == pytest.approx(129.0 * 1.04)
        assert signal.risk_score == pytest.approx(1 - signal.confidence)

    def test_empty_history_holds(self):
        signal = TechnicalSignalProvider().generate("AAPL", [])
        assert signal.action == SignalAction.HOLD
        assert signal.stop_loss == 0.0
        assert signal.current_price is None

    def test_hint_overrides_default(self):
        signal = TechnicalSignalProvider("momentum").generate("AAPL", make_bars(GAP_UP, GAP_UP_VOLUME), "breakout")
        assert signal.strategy_id == "breakout"

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            TechnicalSignalProvider("astrology")


class TestConsensus:

    def test_single_strategy_signal(self):
        signal = MultiStrategySignalProvider().generate("AAPL", make_bars(UPTREND))
        assert signal.action == SignalAction.BUY
        assert signal.strategy_id == "momentum"
        assert signal.reason.endswith("(1/3 strategies agree)")
        assert signal.confidence <= 0.95

    def test_confirmation_bonus_is_policy(self):
        provider = MultiStrategySignalProvider(
            ConsensusPolicy(confirmation_bonus=0.5), strategies=["momentum", "breakout"]
        )
        signal = provider.generate("AAPL", make_bars(GAP_UP, GAP_UP_VOLUME))
        assert signal.action == SignalAction.BUY
        assert signal.strategy_id == "momentum"
        assert signal.confidence == pytest.approx(0.95 * 0.5)

    def test_trend_multiplier_is_policy(self):
        provider = MultiStrategySignalProvider(ConsensusPolicy(trend_aligned_multiplier=0.5))
        signal = provider.generate("AAPL", make_bars([100.0 + i for i in range(60)]))
        assert signal.action == SignalAction.BUY
        assert signal.confidence == pytest.approx(0.95 * 0.5)

    def test_split_vote_holds(self):
        provider = MultiStrategySignalProvider(strategies=["momentum", "mean_reversion"])
        signal = provider.generate("AAPL", make_bars(GAP_UP))
        assert signal.action == SignalAction.HOLD
        assert signal.strategy_id == "consensus"
        assert signal.reason == "Strategies disagree"

    def test_no_votes_hold(self):
        signal = MultiStrategySignalProvider().generate("AAPL", make_bars([100.0] * 30))
        assert signal.action == SignalAction.HOLD
        assert signal.confidence == 0.0

    def test_hint_runs_one_strategy(self):
        signal = MultiStrategySignalProvider().generate("AAPL", make_bars(GAP_UP, GAP_UP_VOLUME), "breakout")
        assert signal.strategy_id == "breakout"
        assert signal.action == SignalAction.BUY
