"""
Batch Dispatcher

Fans out per-meeting enrichment work in fixed-size concurrent batches with a
minimum interval between batch starts, so an LLM backend is never hit by more
than `concurrency` calls at once.

EnrichmentQueue owns a single background worker that pulls submitted task
lists and runs them through run_batches(); the daemon starts it on startup
and drains it on shutdown.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchReport:
    total: int
    succeeded: int
    failed: int
    batches: int
    elapsed_ms: int


async def _run_one(worker: Callable[[Any], Awaitable[Any]], task, task_timeout: float | None):
    if task_timeout:
        return await asyncio.wait_for(worker(task), timeout=task_timeout)
    return await worker(task)


async def run_batches(tasks: Iterable, concurrency: int, min_batch_interval_ms: int,
                      worker: Callable[[Any], Awaitable[Any]], *,
                      describe: Callable[[Any], str] | None = None,
                      task_timeout: float | None = None) -> BatchReport:
    """Run worker(task) for every task, `concurrency` at a time.

    Task failures are logged and counted, never raised. No retries.
    After each batch except the last, waits out the rest of
    min_batch_interval_ms measured from the batch start.
    """
    tasks = list(tasks)
    concurrency = max(1, int(concurrency))
    describe = describe or repr
    started = time.monotonic()
    succeeded = failed = batches = 0

    for offset in range(0, len(tasks), concurrency):
        batch = tasks[offset:offset + concurrency]
        batch_started = time.monotonic()
        batches += 1

        results = await asyncio.gather(
            *(_run_one(worker, task, task_timeout) for task in batch),
            return_exceptions=True,
        )

        for task, result in zip(batch, results):
            if isinstance(result, asyncio.TimeoutError):
                failed += 1
                logger.error(f"Task timed out after {task_timeout}s: {describe(task)}")
            elif isinstance(result, Exception):
                failed += 1
                logger.error(f"Task failed: {describe(task)}: {result}", exc_info=result)
            elif isinstance(result, BaseException):
                raise result
            else:
                succeeded += 1

        if offset + concurrency < len(tasks):
            remaining = min_batch_interval_ms / 1000 - (time.monotonic() - batch_started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    report = BatchReport(
        total=len(tasks),
        succeeded=succeeded,
        failed=failed,
        batches=batches,
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )
    if tasks:
        logger.info(f"Batch run complete: {report.succeeded}/{report.total} succeeded "
                    f"in {report.batches} batch(es), {report.elapsed_ms}ms")
    return report


class EnrichmentQueue:
    """Supervised background worker running submitted task lists through run_batches().

    Concurrency, delay and timeout are re-read from the settings store at the
    start of each unit of work, so a config reload applies to the next batch run.
    """

    def __init__(self, worker: Callable[[Any], Awaitable[Any]], settings_store,
                 describe: Callable[[Any], str] | None = None):
        self._worker = worker
        self._settings = settings_store
        self._describe = describe
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._pending = 0
        self.last_report: BatchReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def depth(self) -> int:
        """Tasks submitted but not yet finished."""
        return self._pending

    def start(self) -> None:
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name='enrichment-queue')
        logger.info("Enrichment queue started")

    async def submit(self, tasks: Iterable) -> int:
        tasks = list(tasks)
        if not tasks:
            return 0
        if not self.running:
            if self._task is not None:
                logger.warning("Enrichment worker was not running; restarting")
            self.start()
        self._pending += len(tasks)
        await self._queue.put(tasks)
        logger.info(f"Queued {len(tasks)} enrichment task(s) ({self._pending} pending)")
        return len(tasks)

    async def drain(self) -> None:
        """Wait until everything submitted so far has been processed."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Enrichment queue stopped")

    async def _run(self) -> None:
        while True:
            tasks = await self._queue.get()
            try:
                settings = self._settings.get()
                self.last_report = await run_batches(
                    tasks,
                    settings.parallel_briefings,
                    settings.api_delay_ms,
                    self._worker,
                    describe=self._describe,
                    task_timeout=settings.task_timeout_seconds,
                )
            except Exception as e:
                logger.error(f"Enrichment worker error: {e}", exc_info=True)
            finally:
                self._pending -= len(tasks)
                self._queue.task_done()
