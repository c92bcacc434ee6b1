import os
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Swap to PostgreSQL via DATABASE_URL env var in production.
# SQLite is used as a local development fallback only.
DEFAULT_DATABASE_URL = "sqlite:///./hedge_cycle.db"

Base = declarative_base()


def make_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


# ---------------------------------------------------------------------------
# Trade history, one row per executed (or failed) order
# ---------------------------------------------------------------------------
class StoredTradeRecord(Base):
    __tablename__ = "trade_records"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, index=True, nullable=False)
    side = Column(String, nullable=False)
    strategy_id = Column(String, index=True, nullable=False)
    status = Column(String, nullable=False)              # FILLED | ACCEPTED | REJECTED
    order_id = Column(String, nullable=True)
    client_order_id = Column(String, index=True, nullable=True)
    quantity = Column(Float, default=0.0)
    price = Column(Float, default=0.0)
    notional = Column(Float, default=0.0)
    latency_ms = Column(Float, default=0.0)
    execution_quality = Column(String, nullable=False)   # EXCELLENT | GOOD | FAIR | POOR
    confidence = Column(Float, default=0.0)
    risk_score = Column(Float, default=0.0)
    portfolio_value = Column(Float, default=0.0)
    mode = Column(String, default="paper")
    error = Column(Text, nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# Learning samples, append-only
# ---------------------------------------------------------------------------
class StoredLearningSample(Base):
    __tablename__ = "learning_samples"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, index=True, nullable=False)
    strategy_id = Column(String, index=True, nullable=False)
    signal_confidence = Column(Float, nullable=False)
    signal_action = Column(String, nullable=False)
    execution_success = Column(Boolean, nullable=False)
    predicted_outcome = Column(Float, nullable=False)
    actual_outcome = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False)
    risk_score = Column(Float, default=0.0)
    pnl = Column(Float, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow)
