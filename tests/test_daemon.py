"""Tests for the daemon entry point."""

import asyncio
import json
import signal
from pathlib import Path

import pytest

from task_scheduler.atomic import FileLock
from task_scheduler.config import ConfigManager
from task_scheduler.daemon import SchedulerDaemon, build_parser, main


class TestParser:
    """Tests for command line parsing."""

    def test_defaults(self):
        args = build_parser().parse_args([])

        assert args.config is None
        assert args.tasks_path is None
        assert args.pidfile == Path("task-scheduler.pid")

    def test_paths(self, tmp_path):
        args = build_parser().parse_args([
            "-c", str(tmp_path / "config.json"),
            "--tasks-path", str(tmp_path / "tasks"),
            "-p", str(tmp_path / "daemon.pid"),
        ])

        assert args.config == tmp_path / "config.json"
        assert args.tasks_path == tmp_path / "tasks"
        assert args.pidfile == tmp_path / "daemon.pid"


class TestMain:
    """Tests for main()."""

    def test_refuses_to_start_when_pidfile_locked(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"name": "locked"}))
        pidfile = tmp_path / "daemon.pid"

        holder = FileLock(pidfile)
        assert holder.acquire(timeout=0) is True
        try:
            assert main(["--config", str(config_file), "--pidfile", str(pidfile)]) == 1
        finally:
            holder.release()


class TestSchedulerDaemon:
    """Tests for the daemon run loop."""

    @pytest.mark.asyncio
    async def test_loads_collections_and_stops_on_signal(self, config, florida, write_collection):
        write_collection(florida)
        daemon = SchedulerDaemon(ConfigManager.from_config(config))

        running = asyncio.ensure_future(daemon.run())
        for _ in range(100):
            if daemon.scheduler.loop is not None:
                break
            await asyncio.sleep(0.01)

        assert len(daemon.scheduler.store.tasks) == 4
        assert daemon.scheduler.triggers.timers["florida.task1"].armed is True

        daemon._signal_handler(signal.SIGTERM)
        await asyncio.wait_for(running, timeout=5)

        assert daemon.received_signal == signal.SIGTERM
        assert daemon.scheduler.shutdown_requested is True
        assert daemon.scheduler.triggers.timers["florida.task1"].armed is False

    @pytest.mark.asyncio
    async def test_missing_tasks_directory_is_not_fatal(self, config, tmp_path):
        config.tasks_path = str(tmp_path / "missing")
        daemon = SchedulerDaemon(ConfigManager.from_config(config))

        running = asyncio.ensure_future(daemon.run())
        for _ in range(100):
            if daemon.scheduler.loop is not None:
                break
            await asyncio.sleep(0.01)

        daemon._signal_handler(signal.SIGINT)
        await asyncio.wait_for(running, timeout=5)

        assert daemon.scheduler.store.tasks == {}

    def test_reload_handler_reads_new_files(self, config, barankay, write_collection):
        daemon = SchedulerDaemon(ConfigManager.from_config(config))
        write_collection(barankay)

        daemon._reload_handler()

        assert "barankay.send-text-messages" in daemon.scheduler.store.tasks
