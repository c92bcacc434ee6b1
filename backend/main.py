"""
Command-line runner: executes trading cycles against the simulated paper broker
(or Alpaca, with --alpaca and credentials in .env) and prints the results as JSON.

  python main.py AAPL MSFT --strategy momentum --dry-run
"""
import argparse
import asyncio
import json
import logging

from dotenv import load_dotenv

from core.config import EngineSettings, ExecutionContext
from core.services import build_services, default_broker
from trading_interface.broker.simulated import SimulatedBroker

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run hedge cycles for one or more symbols.")
    parser.add_argument("symbols", nargs="*", help="Ticker symbols (defaults to WATCHLIST)")
    parser.add_argument("--strategy", choices=["momentum", "mean_reversion", "breakout"],
                        help="Force a single strategy instead of the multi-strategy consensus")
    parser.add_argument("--dry-run", action="store_true", help="Validate orders without submitting them")
    parser.add_argument("--notional", type=float, help="Dollar amount per order")
    parser.add_argument("--cash", type=float, default=100_000.0, help="Starting cash for the simulated broker")
    parser.add_argument("--seed", type=int, help="Seed for the simulated market data")
    parser.add_argument("--alpaca", action="store_true", help="Use the Alpaca broker from .env credentials")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> list:
    settings = EngineSettings.from_env()
    if args.database_url:
        settings.database_url = args.database_url
    broker = default_broker(settings) if args.alpaca else SimulatedBroker(cash=args.cash, seed=args.seed)

    services = build_services(settings, broker=broker)
    await services.warm_start()
    context = ExecutionContext(mode=settings.trading_mode, dry_run=args.dry_run, notional=args.notional)

    try:
        results = await services.orchestrator.run_many(
            [s.upper() for s in args.symbols] or settings.watchlist,
            strategy_hint=args.strategy,
            context=context,
        )
    finally:
        await services.shutdown()
    return results


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    results = asyncio.run(run(args))
    print(json.dumps([r.model_dump(mode="json") for r in results], indent=2))


if __name__ == "__main__":
    main()
