"""
Parallel Executor - Worker Pool with Partial Failure Handling

A fixed pool of workers pulls items off a queue, at most max_concurrent
in flight. Individual failures do not cascade - the worker moves on.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from scripthub.schemas.models import BatchResult, ErrorType, TaskFailure

logger = logging.getLogger("scripthub.executor")


class ParallelExecutor:
    """
    Worker-pool batch executor.

    max_concurrent workers drain a shared queue, so the number of live
    tasks never exceeds max_concurrent however many items there are.
    Exceptions are captured per item.
    """

    def __init__(self, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent

    async def run_batch(
        self,
        items: Iterable[Any],
        worker: Callable[[Any], Awaitable[Any]],
        label: str = "batch",
        on_complete: Optional[Callable[[Any, Any], None]] = None,
    ) -> BatchResult:
        """
        Execute worker(item) for every item.

        Args:
            items: Work items
            worker: Coroutine function called once per item
            label: Batch name for logging
            on_complete: Called with (item, result) as each worker finishes

        Returns:
            BatchResult with results in input order and classified failures
        """
        items = list(items)
        start_time = time.time()
        logger.debug(f"Executing {label}: {len(items)} items, max {self.max_concurrent} concurrent")

        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))
        results: list = [None] * len(items)

        async def drain() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await worker(item)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    results[index] = (item, e)
                    continue
                if on_complete:
                    on_complete(item, result)
                results[index] = (item, result)

        await asyncio.gather(*(drain() for _ in range(min(self.max_concurrent, len(items)))))

        successful = []
        failed = []
        for item, result in results:
            if isinstance(result, Exception):
                failure = self._classify_error(item, result)
                logger.debug(f"{label} item {item!r} failed: {failure.error}")
                failed.append(failure)
            else:
                successful.append(result)

        return BatchResult(
            label=label,
            successful=successful,
            failed=failed,
            duration=time.time() - start_time,
        )

    def _classify_error(self, item: Any, error: Exception) -> TaskFailure:
        """Classify an exception into a TaskFailure."""
        error_str = str(error) or type(error).__name__

        if isinstance(error, asyncio.TimeoutError) or "timeout" in error_str.lower() or "timed out" in error_str.lower():
            error_type = ErrorType.TIMEOUT
            recoverable = True
        elif isinstance(error, PermissionError) or "permission" in error_str.lower():
            error_type = ErrorType.PERMISSION_DENIED
            recoverable = False
        else:
            error_type = ErrorType.EXECUTION_ERROR
            recoverable = True

        return TaskFailure(
            item=item,
            error=error_str[:200],
            error_type=error_type,
            recoverable=recoverable,
        )
