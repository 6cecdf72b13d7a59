"""Queue that accepts posted payloads and hands them to workers in the background."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """Raised when data is staged into a full queue."""

    def __init__(self, message: str = "queue is full, data not pushed") -> None:
        super().__init__(message)


class Worker(Protocol):
    """Something that submits one staged payload."""

    def do_work(self, message: Any) -> None: ...


class DeferredRecordingTask:
    """Stages incoming payloads and periodically moves them to a worker pool.

    The queue is also flushed as soon as it becomes full.
    """

    def __init__(
        self,
        worker_factory: Callable[[], Worker],
        period: float,
        queue_size: int,
        threads: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or _logger
        self._period = period
        self._capacity = queue_size
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max(queue_size, 1))
        self._pool: queue.Queue[Any] = queue.Queue(maxsize=max(queue_size, 1))
        self._stage_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._workers = [worker_factory() for _ in range(threads)]
        for worker in self._workers:
            threading.Thread(target=self._work, args=(worker,), daemon=True).start()

    def stage(self, data: Any) -> None:
        """Queue a payload; raise QueueFullError if there is no room."""
        with self._stage_lock:
            if self._capacity <= 0:
                raise QueueFullError()
            try:
                self._queue.put_nowait(data)
            except queue.Full:
                raise QueueFullError() from None
            if self._queue.full():
                self._wake.set()

    def flush(self) -> int:
        """Move every staged payload to the workers; return how many were handed over."""
        if not self._drain_lock.acquire(blocking=False):
            self._logger.warning("Flush requested while another one is in progress. Ignoring.")
            return 0
        moved = 0
        try:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                try:
                    self._pool.put_nowait(item)
                except queue.Full:
                    self._logger.warning("worker queue is full, dropping staged data")
                    continue
                moved += 1
        finally:
            self._drain_lock.release()
        return moved

    def start(self) -> None:
        """Start flushing periodically."""
        if self.is_running():
            return
        self._stop = threading.Event()
        self._wake.clear()
        self._thread = threading.Thread(target=self._run, args=(self._stop,), daemon=True)
        self._thread.start()

    def stop(self, blocking: bool = True) -> None:
        """Stop the periodic flushing, waiting for it to end if `blocking`."""
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        self._wake.set()
        if blocking:
            thread.join()

    def is_running(self) -> bool:
        """Tell whether the periodic flushing is active."""
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def _run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self._wake.wait(self._period)
            self._wake.clear()
            if stop.is_set():
                break
            try:
                self.flush()
            except Exception:
                self._logger.exception("error flushing staged data")

    def _work(self, worker: Worker) -> None:
        while True:
            message = self._pool.get()
            try:
                worker.do_work(message)
            except Exception:
                self._logger.exception("worker failed to process message")