"""
Background daemon entry point.

Loads configuration (.env and TASK_SCHEDULER_* overrides included) and the
collection files, runs the scheduler on an asyncio loop, and shuts down
gracefully on SIGTERM/SIGINT. SIGHUP reloads the collection files.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from task_scheduler.atomic import FileLock
from task_scheduler.config import ConfigManager, DEFAULT_CONFIG_FILE
from task_scheduler.errors import PersistenceError
from task_scheduler.logs import configure_logging
from task_scheduler.scheduler import Scheduler


logger = logging.getLogger("task-scheduler")


class SchedulerDaemon:
    """
    Runs one Scheduler until a termination signal arrives.
    """

    def __init__(self, config_manager: ConfigManager):
        """
        Initialize daemon.

        Args:
            config_manager: Loaded configuration
        """
        self.config_manager = config_manager
        self.scheduler = Scheduler(config_manager=config_manager)
        self.received_signal: Optional[int] = None
        self._stop_event: Optional[asyncio.Event] = None

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        if self.received_signal is None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.received_signal = signum
        if self._stop_event is not None:
            self._stop_event.set()

    def _reload_handler(self) -> None:
        """Handle reload signal (SIGHUP): re-read the collection files."""
        logger.info("Received SIGHUP, reloading collection files...")
        try:
            self.scheduler.load_tasks()
        except PersistenceError as e:
            logger.error(f"Failed to reload collection files: {e}")

    async def run(self) -> None:
        """Load collections, start scheduling and block until shutdown completes."""
        logger.info("=" * 60)
        logger.info("Task Scheduler Daemon Starting")
        logger.info("=" * 60)

        try:
            report = self.scheduler.load_tasks()
            if not report.ok:
                logger.warning(f"{len(report.errors)} collection file(s) failed to load")
        except PersistenceError as e:
            logger.error(f"Failed to load collection files: {e}")

        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._signal_handler, signum)
        loop.add_signal_handler(signal.SIGHUP, self._reload_handler)

        await self.scheduler.start()
        await self._stop_event.wait()

        logger.info("=" * 60)
        logger.info("Task Scheduler Daemon Shutting Down")
        logger.info("=" * 60)
        await self.scheduler.shutdown(self.received_signal or signal.SIGTERM)
        logger.info("Daemon stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Task Scheduler Daemon"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE})"
    )
    parser.add_argument(
        "--tasks-path",
        type=Path,
        default=None,
        help="Directory of <collection>.tasks.json files (overrides config)"
    )
    parser.add_argument(
        "--pidfile", "-p",
        type=Path,
        default=Path("task-scheduler.pid"),
        help="Pid file location"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Daemon entry point."""
    args = build_parser().parse_args(argv)

    config_manager = ConfigManager(args.config)
    if args.tasks_path:
        config_manager.update(tasks_path=str(args.tasks_path))

    config = config_manager.config
    configure_logging(config.log_path, config.log_level)

    pid_lock = FileLock(args.pidfile)
    if not pid_lock.acquire(timeout=0):
        logger.error(f"Another scheduler holds {args.pidfile}")
        return 1

    try:
        asyncio.run(SchedulerDaemon(config_manager).run())
    finally:
        pid_lock.release()

    return 0


if __name__ == "__main__":
    sys.exit(main())
