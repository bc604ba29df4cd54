#!/usr/bin/env python3
"""
SwapTrader engine runner.

Starts the decision loop, the web API and optionally the console panel,
all on one event loop. Paper mode runs against the in-memory exchange.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from core.config import settings
from core.errors import ConfigError
from core.logging_utils import get_logger, setup_logging
from core.stage_ledger import StageLedger
from core.state import EngineContext
from execution.paper_exchange import PaperExchange
from logic.narrator import Narrator
from trading.orchestrator import Orchestrator
from ui.web_server import run_server_async, set_engine_context

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="EMA trend-following swap engine")
    parser.add_argument("--start", action="store_true", help="enable trading immediately")
    parser.add_argument("--console", action="store_true", help="show the Rich status panel")
    parser.add_argument("--no-web", action="store_true", help="do not start the web API")
    parser.add_argument("--port", type=int, default=settings.web_port)
    parser.add_argument("--seed", type=int, default=7, help="paper exchange random seed")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def _paper_ticker(exchange: PaperExchange, interval: float):
    while True:
        await asyncio.sleep(interval)
        exchange.step()


async def run(args: argparse.Namespace):
    if not settings.is_paper:
        raise ConfigError("live trading needs an exchange client implementing IMarketData/IOrderExecutor; "
                          "set TRADING_MODE=paper")

    exchange = PaperExchange(seed=args.seed)
    context = EngineContext(mode=settings.trading_mode)
    ledger = StageLedger(Path(settings.data_dir) / "stage_ledger.json")
    narrator = Narrator()
    orchestrator = Orchestrator(context, exchange, exchange, ledger=ledger, narrator=narrator)
    set_engine_context(context)
    if args.start:
        context.set_enabled(True)

    logger.info("[RUN] Mode: %s | %s | %.0f%% x %gx", settings.trading_mode,
                ", ".join(context.runtime.enabled_instruments),
                context.runtime.allocation_pct * 100, context.runtime.leverage)

    tasks = [
        asyncio.create_task(orchestrator.run_forever()),
        asyncio.create_task(_paper_ticker(exchange, settings.loop_interval_seconds)),
    ]
    if not args.no_web:
        tasks.append(asyncio.create_task(run_server_async(settings.web_host, args.port)))
        logger.info("[RUN] Web API on http://%s:%d", settings.web_host, args.port)
    if args.console:
        from dashboard.display import Dashboard
        tasks.append(asyncio.create_task(Dashboard(context).run()))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await stop.wait()
    finally:
        logger.info("[RUN] Shutting down...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await orchestrator.close()
        set_engine_context(None)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except ConfigError as e:
        logger.error("[RUN] %s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
