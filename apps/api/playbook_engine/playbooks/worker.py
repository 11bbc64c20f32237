"""Polling worker pool for QUEUED runs.

Architecture:
    poller → asyncio.Queue[run_id] → N workers → RunProcessor.process()

The store is the queue: the poller picks up QUEUED rows oldest first. A run
handed to two workers (or also delivered by an HTTP background task) is
processed once, because the claim is a conditional update.
"""

from __future__ import annotations

import asyncio
import logging

from sqlmodel import select

from playbook_engine.config import Settings, get_settings
from playbook_engine.database.models import PlaybookRun
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.playbooks.processor import RunProcessor
from playbook_engine.schemas import RunStatus


logger = logging.getLogger(__name__)


class RunWorker:
    def __init__(
        self,
        sessions: SessionFactory,
        processor: RunProcessor,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._sessions = sessions
        self.processor = processor
        self.concurrency = max(settings.worker_concurrency, 1)
        self.poll_interval = settings.worker_poll_interval_seconds

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._in_flight: set[str] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    async def queued_run_ids(self, limit: int) -> list[str]:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookRun.id)
                .where(PlaybookRun.status == RunStatus.QUEUED.value)
                .order_by(PlaybookRun.created_at, PlaybookRun.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def process_one(self, run_id: str) -> None:
        """Process a run; the processor's re-raised error is logged, not propagated."""
        try:
            await self.processor.process(run_id)
        except Exception:
            logger.exception(f"Run {run_id} failed in worker")

    async def run_once(self) -> int:
        """Drain the currently QUEUED runs with bounded concurrency. Returns how many were picked up."""
        run_ids = await self.queued_run_ids(limit=self.concurrency * 10)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(run_id: str) -> None:
            async with semaphore:
                await self.process_one(run_id)

        await asyncio.gather(*(bounded(run_id) for run_id in run_ids))
        return len(run_ids)

    # =========================================================================
    # Long-running pool
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks.append(asyncio.create_task(self._poll(), name="run-worker-poller"))
        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._work(), name=f"run-worker-{i}"))
        logger.info(f"Run worker started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Run worker stopped")

    async def _poll(self) -> None:
        while self._running:
            try:
                for run_id in await self.queued_run_ids(limit=self.concurrency * 2):
                    if run_id not in self._in_flight:
                        self._in_flight.add(run_id)
                        self._queue.put_nowait(run_id)
            except Exception:
                logger.exception("Polling for queued runs failed")
            await asyncio.sleep(self.poll_interval)

    async def _work(self) -> None:
        while True:
            run_id = await self._queue.get()
            try:
                await self.process_one(run_id)
            finally:
                self._in_flight.discard(run_id)
                self._queue.task_done()
