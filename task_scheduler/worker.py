"""
Worker: executes exactly one run as a child process.

The command runs under `sh -c` in the run's working directory with the
daemon's environment plus the task's env. Every output line goes to the
structured log tagged with the run id, task id and collection.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Dict, Optional, TYPE_CHECKING

from task_scheduler.errors import ConfigurationError
from task_scheduler.events import EventType
from task_scheduler.logs import run_logger
from task_scheduler.models import Run

if TYPE_CHECKING:
    from task_scheduler.scheduler import Scheduler


logger = logging.getLogger(__name__)

# asyncio StreamReader line limit for child output
OUTPUT_LINE_LIMIT = 1024 * 1024


class Worker:
    """Process wrapper for a single run."""

    def __init__(self, run: Run, scheduler: "Scheduler"):
        self.run = run
        self.scheduler = scheduler
        self.pid: Optional[int] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.task: Optional[asyncio.Task] = None
        # Signal requested before the child existed; delivered once it does
        self.pending_signal: Optional[int] = None
        self.log = run_logger(logger, run.id, run.task.id, run.task.collection)

    def resolve_cwd(self) -> Path:
        """
        Working directory for the child process.

        Raises:
            ConfigurationError: The directory does not exist or is not a directory
        """
        cwd = self.run.task.cwd
        path = Path(cwd).expanduser().resolve() if cwd else Path(".").resolve()
        if not path.is_dir():
            raise ConfigurationError(f"CWD {cwd} provided for {self.run.task.label} does not exist")
        return path

    def environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.run.task.env)
        return env

    async def execute(self) -> Run:
        """
        Run the command to completion.

        Never raises for command or configuration failures; the outcome is
        recorded on the run and announced with worker.complete.
        """
        run = self.run
        try:
            if self.pending_signal is not None:
                reason = f"Killed ({signal.Signals(self.pending_signal).name}) before the process started"
                self.log.warning(reason)
                run.fail(reason)
                return run

            try:
                cwd = self.resolve_cwd()
            except ConfigurationError as e:
                self.log.error(str(e))
                run.fail(str(e))
                return run

            run.start()
            self.log.info(f"worker.start - {run.task.label}")
            self.scheduler.events.emit(EventType.WORKER_START, run)

            self.process = await asyncio.create_subprocess_exec(
                "sh", "-c", run.task.command,
                cwd=str(cwd),
                env=self.environment(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=OUTPUT_LINE_LIMIT,
            )
            self.pid = self.process.pid
            run.pid = self.process.pid
            if self.pending_signal is not None:
                self.process.send_signal(self.pending_signal)

            await asyncio.gather(
                self._pump(self.process.stdout, "stdout", logging.INFO),
                self._pump(self.process.stderr, "stderr", logging.ERROR),
            )
            code = await self.process.wait()

            run.complete(code)
            self.log.info(
                f"worker.complete - {run.task.label} - Total time: {run.duration_human()} "
                f"({run.duration():.3f} seconds), exit code {code}"
            )

        except asyncio.CancelledError:
            self.kill(signal.SIGKILL)
            if not run.is_complete:
                run.fail("Worker cancelled")
            raise

        except Exception as e:
            self.log.error(f"Worker error: {type(e).__name__}: {e}", exc_info=True)
            self.kill(signal.SIGKILL)
            if not run.is_complete:
                run.fail(f"{type(e).__name__}: {e}")

        finally:
            self.scheduler.workers.pop(run.id, None)
            self.log.debug(f"run: {run.model_dump_json()}")
            self.scheduler.events.emit(EventType.WORKER_COMPLETE, run)

        return run

    async def _pump(self, stream: asyncio.StreamReader, name: str, level: int) -> None:
        while True:
            try:
                line = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                line = e.partial
            except asyncio.LimitOverrunError as e:
                # Line longer than the buffer limit: log it in chunks
                line = await stream.read(max(e.consumed, 1))
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self.log.log(level, text, extra={"workerIO": name})

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """
        Send a signal to the child process.

        A worker whose child has not been spawned yet remembers the signal
        and delivers it as soon as the process exists.

        Returns:
            True if a live (or about to start) process was signalled
        """
        if self.process is None:
            if self.run.is_complete:
                return False
            self.pending_signal = sig
            return True
        if self.process.returncode is not None:
            return False
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True
