#!/usr/bin/env python3
"""
Command line entry point: one-shot crawl/index/search jobs and a periodic serve loop.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Awaitable, Callable, Optional

from sitesearch.engine import SearchEngine
from sitesearch.utils.config import Config, load_config
from sitesearch.utils.logger import setup_logging


class SearchApp:
    """Main application class for the search engine."""

    def __init__(self, config: Config):
        self.config = config
        self.engine: Optional[SearchEngine] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown on the running loop."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._on_signal, signum)

    def remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    def _on_signal(self, signum: int):
        self.logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        self._shutdown_event.set()

    async def run(self, command: str, args: argparse.Namespace) -> int:
        """Run one command against a freshly initialized engine."""
        try:
            self.engine = SearchEngine(self.config)
            await self.engine.initialize()
            return await getattr(self, f"_cmd_{command}")(args)

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.engine:
                await self.engine.close()

    async def _cmd_crawl(self, args) -> int:
        stats = await self.engine.run_crawl()
        print(json.dumps(asdict(stats), indent=2))
        return 1 if stats.aborted else 0

    async def _cmd_index(self, args) -> int:
        stats = await self.engine.run_index()
        print(json.dumps(asdict(stats), indent=2))
        return 1 if stats.aborted else 0

    async def _cmd_search(self, args) -> int:
        records = await self.engine.search(args.term)
        print(json.dumps([record.to_dict() for record in records], indent=2))
        return 0

    async def _cmd_seed(self, args) -> int:
        urls = list(args.urls)
        if args.file:
            urls.extend(Path(args.file).read_text(encoding='utf-8').splitlines())
        added = await self.engine.seed(urls)
        print(f"Added {added} new URLs")
        return 0

    async def _cmd_settings(self, args) -> int:
        if args.amount is None and args.search_on is None and args.add_new is None:
            settings = await self.engine.get_settings()
        else:
            settings = await self.engine.update_settings(
                amount=args.amount, search_on=args.search_on, add_new=args.add_new
            )
        print(json.dumps(settings.to_dict(), indent=2))
        return 0

    async def _cmd_serve(self, args) -> int:
        """Trigger crawl and index runs on their own intervals until signalled."""
        self.setup_signal_handlers()
        self.engine.monitor.metrics.start_prometheus_server()

        self.logger.info("=== SEARCH ENGINE SERVING ===")
        self.logger.info(f"Crawl interval: {self.config.scheduler.crawl_interval}s")
        self.logger.info(f"Index interval: {self.config.scheduler.index_interval}s")

        tasks = [
            asyncio.create_task(self._periodic(self.engine.run_crawl,
                                               self.config.scheduler.crawl_interval, "crawl")),
            asyncio.create_task(self._periodic(self.engine.run_index,
                                               self.config.scheduler.index_interval, "index")),
        ]

        try:
            await self._shutdown_event.wait()
            self.logger.info("Shutdown requested, stopping jobs...")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.remove_signal_handlers()
        return 0

    async def _periodic(self, job: Callable[[], Awaitable], interval: float, name: str):
        while not self._shutdown_event.is_set():
            try:
                await job()
            except Exception as e:
                # One failed run must not stop future runs
                self.logger.error(f"{name} run failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


def _on_off(value: str) -> bool:
    lowered = value.lower()
    if lowered in ('on', 'true', 'yes', '1'):
        return True
    if lowered in ('off', 'false', 'no', '0'):
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Site search: crawl, index and query",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed https://example.com/       # Add a start URL
  python main.py settings --amount 50 --add-new on
  python main.py crawl                           # One crawl batch
  python main.py index                           # One index pass
  python main.py search "hello world"
  python main.py serve                           # Crawl and index on intervals
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version='Site Search 1.0.0'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('crawl', help='Run one crawl batch')
    subparsers.add_parser('index', help='Index crawled records')
    subparsers.add_parser('serve', help='Run crawl and index periodically')

    search_parser = subparsers.add_parser('search', help='Search the index')
    search_parser.add_argument('term', help='Search terms')

    seed_parser = subparsers.add_parser('seed', help='Add start URLs')
    seed_parser.add_argument('urls', nargs='*', help='URLs to add')
    seed_parser.add_argument('--file', help='File with one URL per line')

    settings_parser = subparsers.add_parser('settings', help='Show or change crawl settings')
    settings_parser.add_argument('--amount', type=int, help='URLs per crawl batch')
    settings_parser.add_argument('--search-on', type=_on_off, help='on/off')
    settings_parser.add_argument('--add-new', type=_on_off, help='on/off')

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    try:
        config = load_config(args.config)
    except (ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}")
        return 1

    setup_logging(config.logging)

    app = SearchApp(config)
    try:
        return asyncio.run(app.run(args.command, args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
