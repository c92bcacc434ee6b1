"""
Market-Hours Scheduler
======================
Runs trading cycles for every watchlist symbol during regular market hours.

Schedule:
  - Wakes every 60 seconds; scans Mon-Fri 09:35-15:40 ET only
  - A symbol is due again once `scan_interval_minutes` have passed since its last cycle
  - All due symbols run together through `run_many` (concurrent cycles)

Usage:
  scheduler = CycleScheduler(orchestrator.run_many, lambda: settings.watchlist, 20)
  asyncio.create_task(scheduler.run())
"""

import asyncio
import logging
from datetime import datetime, time
from typing import Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger("Scheduler")

ET = ZoneInfo("America/New_York")

MARKET_OPEN  = time(9, 35)   # 5 min buffer after the open for liquidity
MARKET_CLOSE = time(15, 40)  # No new cycles in the last 20 min


def is_market_hours(now_et: datetime) -> bool:
    if now_et.weekday() >= 5:
        return False
    return MARKET_OPEN <= now_et.time() <= MARKET_CLOSE


class CycleScheduler:
    def __init__(
        self,
        run_many_fn: Callable[[List[str]], Awaitable[list]],
        get_watchlist_fn: Callable[[], List[str]],
        scan_interval_minutes: int = 20,
        startup_delay: float = 90.0,
        tick_seconds: float = 60.0,
    ):
        self.run_many      = run_many_fn
        self.get_watchlist = get_watchlist_fn
        self.interval      = scan_interval_minutes * 60   # seconds
        self.startup_delay = startup_delay
        self.tick_seconds  = tick_seconds
        self._last_scan: Dict[str, datetime] = {}   # symbol -> last cycle start
        self._running      = True

    def stop(self):
        self._running = False

    def due_symbols(self, now_et: datetime) -> List[str]:
        due = []
        for symbol in self.get_watchlist():
            last = self._last_scan.get(symbol)
            if last is None or (now_et - last).total_seconds() >= self.interval:
                due.append(symbol)
        return due

    async def run(self):
        logger.info("Cycle scheduler started")
        await asyncio.sleep(self.startup_delay)   # Let the process stabilize before the first scan
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick error: {e}")
            await asyncio.sleep(self.tick_seconds)
        logger.info("Cycle scheduler stopped")

    async def tick(self, now_et: Optional[datetime] = None) -> List[str]:
        now_et = now_et or datetime.now(ET)
        if not is_market_hours(now_et):
            return []

        due = self.due_symbols(now_et)
        if not due:
            return []

        logger.info(f"Scheduler: triggering cycles for {due}")
        for symbol in due:
            self._last_scan[symbol] = now_et
        await self.run_many(due)
        return due
