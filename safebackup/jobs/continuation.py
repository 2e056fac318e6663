from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay, wait_exponential

from safebackup.jobs.types import BatchResult, BatchStatus

logger = logging.getLogger(__name__)


class BatchLockedError(RuntimeError):
    pass


class BatchContinuationQueue:
    """Drives an unfinished backup forward from a single background worker.

    ``schedule`` never blocks: it submits a drain task unless one is already
    active. The drain task calls ``run_batch`` until it returns a terminal
    status, backing off exponentially while another invocation holds the
    execution lock and giving up after ``max_wait_seconds`` of contention.
    """

    def __init__(
        self,
        run_batch: Callable[[], BatchResult],
        *,
        max_wait_seconds: float = 120.0,
        initial_backoff_seconds: float = 0.25,
        max_backoff_seconds: float = 5.0,
    ):
        self._run_batch = run_batch
        self._max_wait_seconds = max_wait_seconds
        self._initial_backoff_seconds = initial_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="safebackup-continuation")
        self._guard = threading.Lock()
        self._active = False
        self._future: Future[BatchResult | None] | None = None

    @property
    def active(self) -> bool:
        with self._guard:
            return self._active

    def schedule(self) -> bool:
        with self._guard:
            if self._active:
                return False
            self._active = True
            self._future = self._executor.submit(self._drain)
        return True

    def wait(self, timeout: float | None = None) -> BatchResult | None:
        with self._guard:
            future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _run_until_unlocked(self) -> BatchResult:
        retrying = Retrying(
            retry=retry_if_exception_type(BatchLockedError),
            stop=stop_after_delay(self._max_wait_seconds),
            wait=wait_exponential(
                multiplier=self._initial_backoff_seconds,
                min=self._initial_backoff_seconds,
                max=self._max_backoff_seconds,
            ),
        )
        for attempt in retrying:
            with attempt:
                result = self._run_batch()
                if result.status == BatchStatus.LOCKED:
                    raise BatchLockedError(result.message)
        return result

    def _drain(self) -> BatchResult | None:
        last: BatchResult | None = None
        try:
            while True:
                try:
                    last = self._run_until_unlocked()
                except RetryError:
                    logger.warning(
                        "Backup continuation gave up after %.0fs of lock contention",
                        self._max_wait_seconds,
                    )
                    return last
                if last.status != BatchStatus.PROCESSING:
                    logger.info("Backup continuation finished with status %s", last.status.value)
                    return last
        except Exception:
            logger.exception("Backup continuation failed, a later run_batch call will resume the job")
            raise
        finally:
            with self._guard:
                self._active = False
