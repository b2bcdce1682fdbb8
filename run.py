#!/usr/bin/env python3
"""
VolumeBot - volume-spike trading bot for Bybit linear perpetuals

Usage:
    python run.py                       # Trade SYMBOL from .env
    python run.py --symbol ETHUSDT      # Override symbol
    python run.py --signals-only        # Alerts only, no orders
    python run.py --help                # Show all options
"""

import argparse
import asyncio
import signal
import sys

from core.logging_utils import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='volumebot',
        description='VolumeBot - volume-spike position bot for Bybit',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py --symbol SOLUSDT --interval 60
  python run.py --signals-only --log-level DEBUG
"""
    )
    parser.add_argument('--symbol', type=str, default=None,
                        help='Linear symbol, e.g. SOLUSDT (default: SYMBOL from env)')
    parser.add_argument('--interval', type=str, default=None,
                        help='Kline interval code: 1,3,5,15,30,60,120,240,360,720,D')
    parser.add_argument('--signals-only', action='store_true',
                        help='Detect and alert, never submit orders')
    parser.add_argument('--log-level', type=str, default=None,
                        help='DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL env or INFO)')
    return parser


def settings_from_args(args: argparse.Namespace):
    from core.config import Settings

    overrides = {}
    if args.symbol:
        overrides['symbol'] = args.symbol.upper()
    if args.interval:
        overrides['candle_interval'] = args.interval
    if args.signals_only:
        overrides['trading_mode'] = 'signals'
    return Settings(**overrides)


async def run(settings):
    from bot import VolumeBot

    bot = VolumeBot(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await bot.start()


def main():
    args = build_parser().parse_args()
    setup_logging(args.log_level)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        logger.error("[RUN] Invalid configuration: %s", e)
        sys.exit(2)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.exception("[RUN] Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
