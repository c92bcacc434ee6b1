"""
Structured Cycle Audit Log
==========================
Every terminal cycle outcome is written as one JSON object per line to stdout,
so the log pipeline can index, search, and alert on it.

Events logged:
  CYCLE_EXECUTED, CYCLE_REJECTED, CYCLE_HOLD, CYCLE_ERROR,
  RISK_CONFIG_UPDATED
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

_audit_logger = logging.getLogger("CycleAudit")
# Writes JSON lines regardless of the root logger config
_handler = logging.StreamHandler()
_handler.setFormatter(logging.Formatter("%(message)s"))
_audit_logger.addHandler(_handler)
_audit_logger.setLevel(logging.INFO)
_audit_logger.propagate = False


def audit(
    event:   str,
    symbol:  Optional[str] = None,
    reason:  Optional[str] = None,
    success: bool = True,
    extra:   Optional[dict] = None,
):
    """
    Emit a single structured audit log entry.

    Args:
        event:   Event type string (e.g. 'CYCLE_EXECUTED')
        symbol:  Ticker the cycle ran for, if any
        reason:  Human-readable outcome reason
        success: True = normal outcome, False = failure/anomaly
        extra:   Additional key-value pairs to include
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service":   "hedge-cycle-engine",
        "log_type":  "cycle_audit",
        "event":     event,
        "success":   success,
        "symbol":    symbol or "",
        "reason":    reason or "",
    }
    if extra:
        entry.update(extra)

    level = logging.INFO if success else logging.WARNING
    _audit_logger.log(level, json.dumps(entry, default=str))


def audit_cycle(result) -> None:
    """Emits the audit entry for a finished CycleResult."""
    extra = {
        "state":         result.state.value,
        "cycle_time_ms": round(result.cycle_time_ms, 1),
    }
    if result.signal is not None:
        extra["strategy_id"] = result.signal.strategy_id
        extra["action"] = result.signal.action.value
        extra["confidence"] = result.signal.confidence
    if result.risk_decision is not None:
        extra["risk_level"] = result.risk_decision.risk_level.value
    if result.execution_result is not None:
        extra["order_id"] = result.execution_result.order_id
        extra["client_order_id"] = result.execution_result.client_order_id

    audit(
        event   = f"CYCLE_{result.status.value.upper()}",
        symbol  = result.symbol,
        reason  = result.reason,
        success = result.status.value != "error",
        extra   = extra,
    )
