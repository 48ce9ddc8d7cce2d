"""Tests for the Scheduler lifecycle and status surface."""

import asyncio
import signal

import pytest

from task_scheduler.errors import ValidationError
from task_scheduler.events import EventType
from task_scheduler.models import RunState


async def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestStatus:
    """Tests for status, ps and configuration access."""

    def test_status_snapshot(self, scheduler, florida):
        scheduler.create_collection_and_tasks(florida)
        scheduler.run_task("florida.task2")
        scheduler.set_config(pause=True)

        status = scheduler.status()

        assert status.queue == ["florida.task2"]
        assert status.workers == []
        assert status.active_timers == ["florida.task1"]
        assert status.is_paused is True
        assert status.collections == ["florida"]
        assert status.total_tasks == 4
        assert status.max_workers == scheduler.dispatcher.max_workers

    def test_ps_when_idle(self, scheduler):
        assert scheduler.ps() == {"count": 0, "pids": [], "runs": []}

    def test_get_runs(self, scheduler):
        run = scheduler.run_task("echo hi")
        assert scheduler.get_runs() == {"queued": [run], "running": []}

    def test_get_config_is_serializable(self, scheduler):
        config = scheduler.get_config()
        assert config["name"] == "test-scheduler"
        assert config["dependency_failure_policy"] == "withhold"

    def test_set_config_coerces_query_strings(self, scheduler):
        scheduler.set_config(pause="true", poll_interval_ms="50")

        assert scheduler.config.pause is True
        assert scheduler.config.poll_interval_ms == 50

    def test_set_config_rejects_unknown_key(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.set_config(colour="blue")


class TestLifecycle:
    """Tests for start and graceful shutdown."""

    @pytest.mark.asyncio
    async def test_start_arms_timers(self, scheduler, barankay):
        scheduler.create_collection_and_tasks(barankay)

        await scheduler.start()
        try:
            assert scheduler.triggers.timers["barankay.send-text-messages"].armed is True
            assert scheduler.dispatcher.running is True
            assert scheduler.started_at is not None
        finally:
            await scheduler.shutdown()

        assert scheduler.triggers.timers["barankay.send-text-messages"].armed is False
        assert scheduler.dispatcher.running is False
        assert scheduler.config.pause is True
        assert scheduler.loop is None

    @pytest.mark.asyncio
    async def test_queued_run_executes(self, scheduler, recorder):
        scheduler.events.subscribe(EventType.WORKER_COMPLETE, recorder)

        await scheduler.start()
        try:
            run = scheduler.run_task("echo hello")
            await wait_for(lambda: recorder.called)
        finally:
            await scheduler.shutdown()

        assert run.state == RunState.COMPLETE
        assert run.exit_code == 0
        assert scheduler.get_queue() == []
        assert scheduler.workers == {}

    @pytest.mark.asyncio
    async def test_dependency_chain_runs_end_to_end(self, scheduler, tmp_path):
        log = tmp_path / "order.txt"
        scheduler.create_task({"name": "chain.a", "command": f"echo a >> {log}"})
        scheduler.create_task({"name": "chain.b", "command": f"echo b >> {log}", "trigger": {"after": "chain.a"}})
        scheduler.create_task({"name": "chain.c", "command": f"echo c >> {log}", "trigger": {"after": "chain.b"}})

        await scheduler.start()
        try:
            scheduler.run_task("chain.a")
            await wait_for(lambda: log.exists() and log.read_text().split() == ["a", "b", "c"])
            await wait_for(lambda: not scheduler.workers and not len(scheduler.queue))
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_failed_upstream_stops_chain(self, scheduler, tmp_path, recorder):
        marker = tmp_path / "b-ran"
        scheduler.create_task({"name": "chain.a", "command": "exit 1"})
        scheduler.create_task({"name": "chain.b", "command": f"touch {marker}", "trigger": {"after": "chain.a"}})
        scheduler.events.subscribe(EventType.WORKER_COMPLETE, recorder)

        await scheduler.start()
        try:
            scheduler.run_task("chain.a")
            await wait_for(lambda: recorder.called)
            await asyncio.sleep(0.1)
        finally:
            await scheduler.shutdown()

        assert recorder.call_count == 1
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_pause_holds_queue(self, scheduler):
        scheduler.set_config(pause=True)

        await scheduler.start()
        try:
            scheduler.run_task("true")
            await asyncio.sleep(0.1)
            assert scheduler.get_queue() == ["true"]
            assert scheduler.workers == {}
        finally:
            await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_signals_and_waits_for_workers(self, scheduler):
        await scheduler.start()
        run = scheduler.run_task("exec sleep 30")
        await wait_for(lambda: run.pid is not None)

        await asyncio.wait_for(scheduler.shutdown(signal.SIGTERM), timeout=5)

        assert scheduler.workers == {}
        assert run.is_complete is True
        assert run.exit_code == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_shutdown_right_after_dispatch_signals_new_child(self, scheduler):
        await scheduler.start()
        run = scheduler.run_task("exec sleep 30")
        scheduler.queue.pop()
        scheduler.start_worker(run)

        await asyncio.wait_for(scheduler.shutdown(signal.SIGTERM), timeout=5)

        assert scheduler.workers == {}
        assert run.is_complete is True
        assert run.exit_code in (None, -signal.SIGTERM)

    @pytest.mark.asyncio
    async def test_shutdown_twice_is_harmless(self, scheduler):
        await scheduler.start()
        await scheduler.shutdown()
        await scheduler.shutdown()
        assert scheduler.shutdown_requested is True
