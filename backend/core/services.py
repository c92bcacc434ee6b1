"""
Service wiring shared by the FastAPI app and the CLI.
Every stateful component is built once here and injected; nothing lives at module level.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from agents.strategy import MultiStrategySignalProvider, SignalProvider
from core.analytics import AnalyticsRecorder
from core.config import EngineSettings, ExecutionContext
from core.cycle import TradingCycleOrchestrator
from core.database import create_tables, make_engine, make_session_factory
from core.learning_engine import LearningEngine
from core.risk_engine import RiskEngine
from core.scheduler import CycleScheduler
from core.store import AbstractTradingStore, SqlTradingStore
from trading_interface.broker.alpaca import AlpacaBroker
from trading_interface.broker.base import AbstractBrokerAPI
from trading_interface.broker.simulated import SimulatedBroker
from trading_interface.execution.router import ExecutionRouter
from trading_interface.execution.status_poller import OrderStatusPoller

logger = logging.getLogger("Services")


@dataclass
class TradingServices:
    settings:     EngineSettings
    broker:       AbstractBrokerAPI
    store:        AbstractTradingStore
    risk_engine:  RiskEngine
    poller:       OrderStatusPoller
    router:       ExecutionRouter
    analytics:    AnalyticsRecorder
    learning:     LearningEngine
    orchestrator: TradingCycleOrchestrator
    scheduler:    CycleScheduler

    async def warm_start(self) -> None:
        """Reloads the process-local caches from the store."""
        peak = await self.store.load_peak_portfolio_value()
        self.risk_engine.peak_tracker.restore(peak)
        strategies = await self.learning.reload_from_store()
        logger.info(f"Warm start: peak portfolio value ${peak:,.2f}, {strategies} strategies")

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.poller.stop()
        aclose = getattr(self.broker, "aclose", None)
        if aclose is not None:
            await aclose()


def default_broker(settings: EngineSettings) -> AbstractBrokerAPI:
    if settings.api_key and settings.api_secret:
        return AlpacaBroker(settings.api_key, settings.api_secret, mode=settings.trading_mode)
    logger.warning("No Alpaca credentials configured; using the simulated paper broker.")
    return SimulatedBroker()


def build_services(
    settings: Optional[EngineSettings] = None,
    broker: Optional[AbstractBrokerAPI] = None,
    store: Optional[AbstractTradingStore] = None,
    session_factory: Optional[sessionmaker] = None,
    signal_provider: Optional[SignalProvider] = None,
) -> TradingServices:
    settings = settings or EngineSettings.from_env()
    broker = broker or default_broker(settings)

    if store is None:
        if session_factory is None:
            engine = make_engine(settings.database_url)
            create_tables(engine)
            session_factory = make_session_factory(engine)
        store = SqlTradingStore(session_factory)

    risk_engine = RiskEngine(settings.risk)
    poller = OrderStatusPoller(broker)
    router = ExecutionRouter(
        broker,
        allow_live     = settings.allow_live_trading,
        max_retries    = settings.order_max_retries,
        submit_timeout = settings.order_timeout_seconds,
        status_poller  = poller,
    )
    analytics = AnalyticsRecorder(store)
    learning = LearningEngine(store)
    orchestrator = TradingCycleOrchestrator(
        broker          = broker,
        signal_provider = signal_provider or MultiStrategySignalProvider(),
        risk_engine     = risk_engine,
        router          = router,
        analytics       = analytics,
        learning        = learning,
        default_context = ExecutionContext(mode=settings.trading_mode),
    )
    scheduler = CycleScheduler(
        orchestrator.run_many,
        lambda: settings.watchlist,
        settings.scan_interval_minutes,
    )
    return TradingServices(
        settings     = settings,
        broker       = broker,
        store        = store,
        risk_engine  = risk_engine,
        poller       = poller,
        router       = router,
        analytics    = analytics,
        learning     = learning,
        orchestrator = orchestrator,
        scheduler    = scheduler,
    )
