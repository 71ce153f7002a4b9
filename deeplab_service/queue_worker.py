"""
Off-caller execution for pipeline requests.

Requests run on a small thread pool so the caller (UI loop, event loop, HTTP
worker) is never blocked by inference. Cancellation is cooperative: the
in-flight stage finishes and its result is discarded.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from threading import Event
from typing import Iterable, List, Optional

from . import config
from .compositing import CompositeRequest
from .image_buffer import ImageReference
from .pipeline import PipelineController, PipelineResult, get_controller

logger = logging.getLogger(__name__)


@dataclass
class BatchItem:
    image: ImageReference
    request: CompositeRequest = field(default_factory=CompositeRequest)


class RemovalJob:
    """Handle for one submitted request."""

    def __init__(self, future: "Future[PipelineResult]", cancel_event: Event) -> None:
        self._future = future
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Drop the job if still queued, otherwise discard its result when the current stage ends."""
        self._cancel_event.set()
        self._future.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> PipelineResult:
        """Wait for the run; raises `concurrent.futures.CancelledError` if dropped while queued."""
        return self._future.result(timeout=timeout)


class RemovalWorker:
    """Thread pool that executes pipeline runs against one controller."""

    def __init__(
        self,
        controller: Optional[PipelineController] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self._controller = controller or get_controller()
        max_workers = max_workers or config.get_settings().worker_threads or 1
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deeplab-worker")

    def submit(self, image: ImageReference, request: Optional[CompositeRequest] = None) -> RemovalJob:
        cancel_event = Event()
        future = self._executor.submit(self._controller.run, image, request, cancel_event)
        return RemovalJob(future, cancel_event)

    def process_batch(self, items: Iterable[BatchItem]) -> List[PipelineResult]:
        """
        Process a batch of images concurrently.

        Returns one `PipelineResult` per item, matching the input order;
        a failing item does not stop the others.
        """
        jobs = []
        for item in items:
            logger.info("Queueing batch item mode=%s", item.request.mode.value)
            jobs.append(self.submit(item.image, item.request))
        return [job.result() for job in jobs]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "RemovalWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


def process_batch(items: Iterable[BatchItem], controller: Optional[PipelineController] = None) -> List[PipelineResult]:
    """Convenience wrapper that spins up a worker for a single batch."""
    with RemovalWorker(controller=controller) as worker:
        return worker.process_batch(items)
