"""
Per-process guard that keeps at most one drain loop active.
"""

import asyncio
import contextvars
import threading
from enum import Enum

from shiori.config.logging import get_logger
from shiori.v1.infra.jobs.worker import DrainReport, JobDispatcher

logger = get_logger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class WorkerLifecycle:
    """
    Starts the dispatcher's drain loop on demand, never twice at once.

    ``ensure_running()`` is safe to call after every enqueue. If a loop is
    already active the call only records that new work may exist; the active
    loop then drains once more before it exits, so a job committed while the
    loop was winding down is still picked up.

    This is an in-process guard only. Separate processes each run their own
    loop; the job store's claim-once semantics keep them from sharing a job.
    """

    def __init__(self, dispatcher: JobDispatcher):
        self.dispatcher = dispatcher
        self.last_report: DrainReport | None = None
        self._lock = threading.Lock()
        self._task: asyncio.Task[DrainReport] | None = None
        self._redrain = False
        self._stop_requested = False

    @property
    def state(self) -> WorkerState:
        with self._lock:
            active = self._task is not None and not self._task.done()
        return WorkerState.RUNNING if active else WorkerState.IDLE

    @property
    def is_running(self) -> bool:
        return self.state is WorkerState.RUNNING

    def ensure_running(self) -> bool:
        """
        Start a drain loop unless one is active.

        Returns True if this call launched the loop. The first launch freezes
        the dispatcher's job registry. Must be called from a thread with a
        running event loop; the loop task is not awaited.
        """
        with self._lock:
            if self._task is not None and not self._task.done():
                self._redrain = True
                return False

            loop = asyncio.get_running_loop()
            # Handlers cannot be swapped once jobs may be executing
            if not self.dispatcher.registry.is_frozen():
                self.dispatcher.registry.freeze()

            self._redrain = False
            self._stop_requested = False
            self._task = loop.create_task(
                self._run(),
                name=f"job-drain-{self.dispatcher.worker_id}",
                context=contextvars.Context(),
            )

        logger.info("Drain loop launched", worker_id=self.dispatcher.worker_id)
        return True

    def stop(self) -> None:
        """Ask the active loop to stop after its current cycle."""
        with self._lock:
            self._stop_requested = True
            self._redrain = False

    async def wait_idle(self) -> DrainReport | None:
        """Wait for the active loop (if any) and return its report."""
        task = self._task
        if task is None:
            return self.last_report
        return await asyncio.shield(task)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop gracefully, cancelling the loop if it overruns ``timeout``."""
        self.stop()
        task = self._task
        if task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Drain loop did not stop in time; cancelling",
                worker_id=self.dispatcher.worker_id,
                active_jobs=len(self.dispatcher.active_jobs),
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _should_stop(self) -> bool:
        return self._stop_requested

    def _detach(self) -> None:
        # Caller holds self._lock
        if self._task is asyncio.current_task():
            self._task = None

    async def _run(self) -> DrainReport:
        total = DrainReport()
        try:
            while True:
                report = await self.dispatcher.drain(should_stop=self._should_stop)
                total.merge(report)

                with self._lock:
                    if self._redrain and not self._stop_requested and not report.aborted:
                        self._redrain = False
                        continue
                    self.last_report = total
                    self._detach()
                    break
        except BaseException:
            with self._lock:
                self._detach()
            raise

        return total
