"""
Bounded-concurrency batch orchestration for bulk marketplace operations.

Splits work into chunks, runs at most `max_concurrency` chunks at once,
spaces chunk starts by `inter_chunk_delay`, isolates chunk failures and
returns per-item outcomes in input order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, TypeVar

from sellerlink.exceptions import SellerLinkError
from sellerlink.logging import get_logger
from sellerlink.types import (
    NOT_DISPATCHED_REASON,
    BatchConfig,
    BatchJob,
    BatchReport,
    BatchStatus,
    ItemOutcome,
    OperationResult,
)

logger = get_logger(__name__)

T = TypeVar("T")

ChunkWorker = Callable[[list[T]], Awaitable[OperationResult[Any]]]


def _item_outcomes(chunk: list[T], result: OperationResult[Any]) -> list[ItemOutcome[T]]:
    """Spread a successful chunk result over the chunk's items.

    A list of OperationResult aligned with the chunk gives per-item outcomes,
    a plain aligned list gives per-item values, anything else is shared by
    every item.
    """
    value = result.value
    if isinstance(value, list) and len(value) == len(chunk):
        outcomes: list[ItemOutcome[T]] = []
        for item, entry in zip(chunk, value):
            if isinstance(entry, OperationResult):
                reason = None if entry.ok else str(entry.error or "item failed")
                outcomes.append(ItemOutcome(item=item, ok=entry.ok, value=entry.value, reason=reason))
            else:
                outcomes.append(ItemOutcome(item=item, ok=True, value=entry))
        return outcomes
    return [ItemOutcome(item=item, ok=True, value=value) for item in chunk]


class BatchProcessor(Generic[T]):
    """Runs chunked work with bounded concurrency.

    A processor runs one job at a time; it can be reused once a job ends.
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or BatchConfig()
        self._sleep = sleep
        self._status = BatchStatus.IDLE
        self._cancelled = asyncio.Event()
        self._halted = False

    @property
    def status(self) -> BatchStatus:
        return self._status

    def cancel(self) -> None:
        """Stop dispatching new chunks. Chunks already running finish."""
        self._cancelled.set()

    def _should_stop(self) -> bool:
        return self._halted or self._cancelled.is_set()

    async def process_batch(
        self,
        items: Sequence[T],
        worker: ChunkWorker[T],
        config: BatchConfig | None = None,
    ) -> BatchReport[T]:
        """Run `worker` over `items` in chunks.

        Args:
            items: Work items; output order matches this order.
            worker: Coroutine function called with each chunk.
            config: Overrides the processor's default config for this job.

        Returns:
            BatchReport with one outcome per item.

        Raises:
            RuntimeError: If this processor is already running a job.
        """
        if self._status is BatchStatus.RUNNING:
            raise RuntimeError("BatchProcessor is already running a job")

        job = BatchJob(items=list(items), config=config or self.config)
        chunks = job.chunks
        results: list[ItemOutcome[T] | None] = [None] * len(job.items)

        self._status = BatchStatus.RUNNING
        self._halted = False
        self._cancelled.clear()

        logger.info(
            "Batch started",
            job_id=job.job_id,
            items=len(job.items),
            chunks=len(chunks),
            max_concurrency=job.config.max_concurrency,
        )

        try:
            await self._dispatch(job, chunks, worker, results)
        except BaseException:
            self._status = BatchStatus.PARTIALLY_FAILED
            logger.warning("Batch interrupted", job_id=job.job_id)
            raise
        finally:
            for index, outcome in enumerate(results):
                if outcome is None:
                    results[index] = ItemOutcome(
                        item=job.items[index],
                        ok=False,
                        reason=NOT_DISPATCHED_REASON,
                        dispatched=False,
                    )

        report = BatchReport(
            job_id=job.job_id,
            status=BatchStatus.COMPLETED,
            results=[outcome for outcome in results if outcome is not None],
            chunk_count=len(chunks),
        )
        if report.failed_count:
            report.status = BatchStatus.PARTIALLY_FAILED
        self._status = report.status

        logger.info(
            "Batch finished",
            job_id=job.job_id,
            status=report.status.value,
            succeeded=len(job.items) - report.failed_count,
            failed=report.failed_count,
        )
        return report

    async def _dispatch(
        self,
        job: BatchJob[T],
        chunks: list[tuple[int, list[T]]],
        worker: ChunkWorker[T],
        results: list[ItemOutcome[T] | None],
    ) -> None:
        slots = asyncio.Semaphore(job.config.max_concurrency)
        tasks: list[asyncio.Task[None]] = []

        for index, (offset, chunk) in enumerate(chunks):
            if self._should_stop():
                break
            if index > 0 and job.config.inter_chunk_delay > 0:
                await self._sleep(job.config.inter_chunk_delay)
            await slots.acquire()
            if self._should_stop():
                slots.release()
                break

            task = asyncio.ensure_future(self._run_chunk(job, index, offset, chunk, worker, results))
            task.add_done_callback(lambda _: slots.release())
            tasks.append(task)

        if tasks:
            await asyncio.gather(*tasks)

        if self._should_stop() and len(tasks) < len(chunks):
            logger.warning(
                "Batch dispatch stopped early",
                job_id=job.job_id,
                dispatched_chunks=len(tasks),
                total_chunks=len(chunks),
                cancelled=self._cancelled.is_set(),
            )

    async def _run_chunk(
        self,
        job: BatchJob[T],
        index: int,
        offset: int,
        chunk: list[T],
        worker: ChunkWorker[T],
        results: list[ItemOutcome[T] | None],
    ) -> None:
        attempts = job.config.max_retries + 1
        reason = "unknown error"

        for attempt in range(1, attempts + 1):
            try:
                result = await worker(chunk)
            except SellerLinkError as e:
                reason = str(e)
            except Exception as e:
                # A chunk worker must never take sibling chunks down with it.
                logger.exception("Batch chunk worker raised", job_id=job.job_id, chunk=index)
                reason = f"{type(e).__name__}: {e}"
            else:
                if result.ok:
                    for position, outcome in enumerate(_item_outcomes(chunk, result)):
                        results[offset + position] = outcome
                    return
                reason = str(result.error or "chunk failed")

            if attempt < attempts:
                logger.warning(
                    "Batch chunk failed, retrying",
                    job_id=job.job_id,
                    chunk=index,
                    attempt=attempt,
                    reason=reason,
                )

        logger.warning("Batch chunk failed", job_id=job.job_id, chunk=index, reason=reason)
        for position, item in enumerate(chunk):
            results[offset + position] = ItemOutcome(item=item, ok=False, reason=reason)

        if not job.config.continue_on_error:
            self._halted = True
