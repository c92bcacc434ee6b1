import asyncio

import httpx
import pytest

from conftest import DummyBroker, DummyStore, make_account, make_bars, make_signal
from agents.strategy import SignalProvider, TechnicalSignalProvider
from core.analytics import AnalyticsRecorder
from core.cycle import TradingCycleOrchestrator
from core.learning_engine import LearningEngine
from core.risk_engine import RiskEngine
from trading_interface.broker.alpaca import AlpacaBroker
from trading_interface.broker.exceptions import InsufficientFundsError
from trading_interface.events.schemas import CycleState, CycleStatus, SignalAction
from trading_interface.execution.router import ExecutionRouter


class FixedSignalProvider(SignalProvider):
    def __init__(self, signal=None, error=None):
        self.signal = signal
        self.error = error
        self.calls = []

    def generate(self, symbol, price_history, strategy_hint=None):
        self.calls.append((symbol, list(price_history), strategy_hint))
        if self.error:
            raise self.error
        return self.signal.model_copy(update={"symbol": symbol})


class SlowBroker(DummyBroker):
    async def submit_order(self, order):
        await asyncio.sleep(0.05)
        return await super().submit_order(order)


class GatewayErrorBroker(DummyBroker):
    """Submits through the Alpaca adapter against a gateway answering 200 with an HTML page."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        self.alpaca = AlpacaBroker(client=httpx.AsyncClient(transport=transport))

    async def submit_order(self, order):
        self.submitted.append(order)
        return await self.alpaca.submit_order(order)


def build(broker=None, store=None, provider=None, **router_kwargs):
    broker = broker or DummyBroker()
    store = store or DummyStore()
    params = dict(backoff_base=0.01, submit_timeout=0.05)
    params.update(router_kwargs)
    orchestrator = TradingCycleOrchestrator(
        broker          = broker,
        signal_provider = provider or FixedSignalProvider(make_signal()),
        risk_engine     = RiskEngine(),
        router          = ExecutionRouter(broker, **params),
        analytics       = AnalyticsRecorder(store),
        learning        = LearningEngine(store),
    )
    return orchestrator, broker, store


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_executed_cycle_records_everything(self):
        orchestrator, broker, store = build()
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.EXECUTED
        assert result.state == CycleState.DONE
        assert result.reason.startswith("Executed buy AAPL: order brk_")
        assert result.execution_result.success is True
        assert len(broker.submitted) == 1
        assert store.trades == [result.trade_record]
        assert store.samples == [result.learning_sample]
        assert result.trade_record.portfolio_value == 100_000.0
        assert result.cycle_time_ms >= 0

    @pytest.mark.asyncio
    async def test_rejected_cycle_never_submits(self):
        broker = DummyBroker(account=make_account(trading_blocked=True))
        orchestrator, broker, store = build(broker=broker)
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.REJECTED
        assert result.state == CycleState.REJECTED
        assert result.reason == "Trading blocked on account"
        assert result.execution_result is None
        assert broker.submitted == []
        assert store.trades == [] and store.samples == []

    @pytest.mark.asyncio
    async def test_hold_cycle(self):
        provider = FixedSignalProvider(make_signal(SignalAction.HOLD, 0.0))
        orchestrator, broker, store = build(provider=provider)
        result = await orchestrator.run_cycle("MSFT")

        assert result.status == CycleStatus.HOLD
        assert result.state == CycleState.HOLD
        assert result.reason == "Signal recommends HOLD"
        assert result.risk_decision.risk_level.value == "LOW"
        assert broker.submitted == []

    @pytest.mark.asyncio
    async def test_failed_execution_is_recorded(self):
        broker = DummyBroker(submit_effects=[InsufficientFundsError("insufficient buying power")])
        orchestrator, broker, store = build(broker=broker)
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.ERROR
        assert result.state == CycleState.DONE
        assert "insufficient buying power" in result.reason
        assert result.trade_record.status == "REJECTED"
        assert result.learning_sample.actual_outcome == -1.0

    @pytest.mark.asyncio
    async def test_garbled_broker_response_is_still_recorded(self):
        orchestrator, broker, store = build(broker=GatewayErrorBroker())
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.ERROR
        assert result.state == CycleState.DONE
        assert len(broker.submitted) == 1
        assert result.execution_result.error.startswith("Execution error: Expecting value")
        assert result.execution_result.client_order_id == broker.submitted[0].client_order_id
        assert result.trade_record.client_order_id == broker.submitted[0].client_order_id
        assert result.learning_sample.execution_success is False
        assert store.trades == [result.trade_record]
        assert store.samples == [result.learning_sample]

    @pytest.mark.asyncio
    async def test_unexpected_fault_becomes_error_with_partial_results(self):
        provider = FixedSignalProvider(error=RuntimeError("feature pipeline crashed"))
        orchestrator, broker, store = build(provider=provider)
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.ERROR
        assert result.state == CycleState.ERROR
        assert result.reason == "Cycle error: feature pipeline crashed"
        assert result.signal is None

    @pytest.mark.asyncio
    async def test_risk_overrides_apply_to_one_cycle(self):
        orchestrator, broker, store = build()
        result = await orchestrator.run_cycle("AAPL", risk_overrides={"max_exposure": 0.1})

        assert result.status == CycleStatus.REJECTED
        assert result.reason.startswith("Exposure too high")
        assert orchestrator.risk_engine.config.max_exposure == 0.5

    @pytest.mark.asyncio
    async def test_invalid_override_is_a_cycle_error(self):
        orchestrator, broker, store = build()
        result = await orchestrator.run_cycle("AAPL", risk_overrides={"max_exposur": 0.1})
        assert result.status == CycleStatus.ERROR
        assert result.signal is not None
        assert broker.submitted == []


class TestPriceHistory:

    @pytest.mark.asyncio
    async def test_bars_fetched_from_broker_when_not_supplied(self):
        bars = make_bars([100.0 + i for i in range(30)])
        provider = FixedSignalProvider(make_signal())
        orchestrator, broker, store = build(broker=DummyBroker(bars=bars), provider=provider)
        await orchestrator.run_cycle("AAPL", strategy_hint="breakout")

        symbol, history, hint = provider.calls[0]
        assert symbol == "AAPL"
        assert len(history) == 30
        assert hint == "breakout"

    @pytest.mark.asyncio
    async def test_short_history_holds_end_to_end(self):
        orchestrator, broker, store = build(provider=TechnicalSignalProvider("momentum"))
        result = await orchestrator.run_cycle("AAPL", price_history=make_bars([100.0] * 5))
        assert result.status == CycleStatus.HOLD
        assert broker.submitted == []


class TestRecording:

    @pytest.mark.asyncio
    async def test_analytics_failure_does_not_block_learning(self):
        orchestrator, broker, store = build(store=DummyStore(fail_trades=True))
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.EXECUTED
        assert result.trade_record is None
        assert result.learning_sample is not None
        assert store.samples == [result.learning_sample]

    @pytest.mark.asyncio
    async def test_learning_store_failure_queues_sample(self):
        orchestrator, broker, store = build(store=DummyStore(fail_samples=True))
        result = await orchestrator.run_cycle("AAPL")

        assert result.status == CycleStatus.EXECUTED
        assert result.learning_sample.persisted is False
        assert len(orchestrator.learning.pending_replay) == 1
        assert len(store.trades) == 1


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_run_many_keeps_symbol_order(self):
        orchestrator, broker, store = build()
        results = await orchestrator.run_many(["AAPL", "MSFT", "SPY"])

        assert [r.symbol for r in results] == ["AAPL", "MSFT", "SPY"]
        assert all(r.status == CycleStatus.EXECUTED for r in results)
        assert orchestrator.learning.get_strategy_performance("momentum").total_signals == 3
        assert len({o.client_order_id for o in broker.submitted}) == 3

    @pytest.mark.asyncio
    async def test_cancellation_lets_submission_and_records_finish(self):
        orchestrator, broker, store = build(broker=SlowBroker(), submit_timeout=1.0)
        task = asyncio.ensure_future(orchestrator.run_cycle("AAPL"))
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(broker.submitted) == 1
        assert len(broker.accepted) == 1
        assert len(store.trades) == 1
        assert len(store.samples) == 1
