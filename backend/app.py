"""
Hedge Cycle Engine: FastAPI Backend
==================================
Thin HTTP surface over the trading cycle:
  - POST /api/cycle         one symbol, full SIGNAL -> RISK -> EXECUTE -> RECORD cycle
  - POST /api/cycles        many symbols, run concurrently
  - GET  /api/strategies    per-strategy performance, best accuracy first
  - GET  /api/trades        recent trade history
  - GET  /api/analytics     aggregate execution statistics
  - GET/PUT /api/risk/config
  - /health                 liveness/readiness probe

Startup creates tables, reloads the peak watermark and learning aggregates from
the store, and launches the market-hours scheduler when SCHEDULER_ENABLED is set.
"""

import asyncio
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.audit import audit
from core.config import ExecutionContext
from core.services import TradingServices, build_services
from core.store import StoreError
from trading_interface.events.schemas import CycleResult, StrategyPerformance, TradeRecord

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("API")

_TICKER_RE = re.compile(r"^[A-Z][A-Z0-9.\-]{0,9}$")


def sanitize_ticker(value: str) -> str:
    ticker = value.strip().upper()
    if not _TICKER_RE.match(ticker):
        raise ValueError(f"Invalid ticker symbol: {value!r}")
    return ticker


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CycleRequest(BaseModel):
    symbol:         str
    strategy_hint:  Optional[str] = None
    context:        Optional[ExecutionContext] = None
    risk_overrides: Optional[Dict[str, Any]] = None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str) -> str:
        return sanitize_ticker(v)


class MultiCycleRequest(BaseModel):
    symbols:        List[str] = Field(min_length=1, max_length=50)
    strategy_hint:  Optional[str] = None
    context:        Optional[ExecutionContext] = None
    risk_overrides: Optional[Dict[str, Any]] = None

    @field_validator("symbols")
    @classmethod
    def _symbols(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(sanitize_ticker(s) for s in v))


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------
def create_app(services: Optional[TradingServices] = None) -> FastAPI:
    app = FastAPI(title="Hedge Cycle Engine API", version="1.0.0")
    app.state.services = services

    cors_origins = os.getenv(
        "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services(request: Request) -> TradingServices:
        return request.app.state.services

    def validate_overrides(svc: TradingServices, overrides: Optional[Dict[str, Any]]):
        try:
            svc.risk_engine.config.merged(overrides)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid risk overrides: {e}")

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            app.state.services = build_services()
        svc: TradingServices = app.state.services
        await svc.warm_start()
        if svc.settings.scheduler_enabled:
            asyncio.create_task(svc.scheduler.run())
            logger.info(
                f"Scheduler running, watchlist: {svc.settings.watchlist}, "
                f"interval: {svc.settings.scan_interval_minutes}min"
            )

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.services is not None:
            await app.state.services.shutdown()

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------
    @app.get("/health")
    def health_check(request: Request):
        svc = get_services(request)
        return {
            "status": "ok",
            "mode": svc.settings.trading_mode.value if svc else "unknown",
            "time": datetime.utcnow().isoformat(),
        }

    @app.post("/api/cycle", response_model=CycleResult)
    async def run_cycle(payload: CycleRequest, request: Request):
        svc = get_services(request)
        validate_overrides(svc, payload.risk_overrides)
        return await svc.orchestrator.run_cycle(
            payload.symbol,
            strategy_hint  = payload.strategy_hint,
            context        = payload.context,
            risk_overrides = payload.risk_overrides,
        )

    @app.post("/api/cycles", response_model=List[CycleResult])
    async def run_cycles(payload: MultiCycleRequest, request: Request):
        svc = get_services(request)
        validate_overrides(svc, payload.risk_overrides)
        return await svc.orchestrator.run_many(
            payload.symbols,
            strategy_hint  = payload.strategy_hint,
            context        = payload.context,
            risk_overrides = payload.risk_overrides,
        )

    @app.get("/api/strategies", response_model=List[StrategyPerformance])
    def list_strategies(request: Request):
        return get_services(request).learning.strategy_comparison()

    @app.get("/api/strategies/{strategy_id}")
    def get_strategy(strategy_id: str, request: Request, history_limit: int = 50):
        learning = get_services(request).learning
        perf = learning.get_strategy_performance(strategy_id)
        if perf is None:
            raise HTTPException(status_code=404, detail=f"Unknown strategy '{strategy_id}'")
        history = learning.history(strategy_id)[-history_limit:] if history_limit > 0 else []
        return {"performance": perf, "history": history}

    @app.get("/api/trades", response_model=List[TradeRecord])
    async def recent_trades(request: Request, limit: int = 50):
        try:
            return await get_services(request).store.recent_trades(min(max(limit, 1), 500))
        except StoreError as e:
            raise HTTPException(status_code=503, detail=f"Trade history unavailable: {e}")

    @app.get("/api/analytics")
    async def analytics_summary(request: Request):
        summary = await get_services(request).analytics.performance_summary()
        return summary or {"total_trades": 0}

    @app.get("/api/risk/config")
    def get_risk_config(request: Request):
        return get_services(request).risk_engine.get_config()

    @app.put("/api/risk/config")
    def update_risk_config(payload: Dict[str, Any], request: Request):
        svc = get_services(request)
        try:
            config = svc.risk_engine.update_config(payload)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid risk config: {e}")
        audit("RISK_CONFIG_UPDATED", reason="Risk config updated via API", extra={"changes": payload})
        return config

    return app


app = create_app()
