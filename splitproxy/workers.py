"""Workers that post staged SDK payloads to the backend, and the tasks that feed them."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Any, Protocol

from splitproxy.deferred import DeferredRecordingTask
from splitproxy.dtos import Metadata, RawData, RawImpressions

_logger = logging.getLogger(__name__)


class Recorder(Protocol):
    """Something able to post a raw payload to a backend path."""

    def record_raw(
        self,
        path: str,
        payload: bytes,
        metadata: Metadata,
        extra_headers: dict[str, str] | None,
    ) -> Any: ...


class RecordingWorker:
    """Posts one kind of raw payload to a fixed backend path.

    Subclasses set the path, the payload type they accept and, when failures
    must be reported back, the message used to wrap them.
    """

    path: str = ""
    expected_type: type = RawData
    expected_label: str = "RawData"
    error_message: str | None = None
    failure_time: int = 1

    def __init__(self, name: str, recorder: Recorder) -> None:
        self.name = name
        self.recorder = recorder

    def _extra_headers(self, message: Any) -> dict[str, str] | None:
        return None

    def do_work(self, message: Any) -> None:
        """Post a staged payload; payloads of the wrong type are logged and dropped."""
        if type(message) is not self.expected_type:
            _logger.error(
                "invalid data fetched from queue. Expected %s. Got '%s'",
                self.expected_label,
                type(message).__name__,
            )
            return

        try:
            self.recorder.record_raw(
                self.path, message.payload, message.metadata, self._extra_headers(message)
            )
        except Exception as exc:
            if self.error_message is None:
                _logger.debug("error posting to %s: %s", self.path, exc)
                return
            raise RuntimeError(f"{self.error_message}: {exc}") from exc


class EventWorker(RecordingWorker):
    """Posts raw event bulks."""

    path = "/events/bulk"
    expected_label = "RawEvents"


class ImpressionWorker(RecordingWorker):
    """Posts raw impression bulks along with their impressions mode."""

    path = "/testImpressions/bulk"
    expected_type = RawImpressions
    expected_label = "RawImpressions"
    error_message = "error posting impressions to Split servers"

    def _extra_headers(self, message: RawImpressions) -> dict[str, str]:
        return {"SDKImpressionsMode": message.mode}


class ImpressionCountWorker(RecordingWorker):
    """Posts raw impression counts."""

    path = "/testImpressions/count"
    expected_label = "RawImpressionCount"
    error_message = "error posting impression counts to Split servers"


class TelemetryConfigWorker(RecordingWorker):
    """Posts raw SDK configuration telemetry."""

    path = "/metrics/config"
    expected_label = "RawTelemetryConfig"


class TelemetryUsageWorker(RecordingWorker):
    """Posts raw SDK usage telemetry."""

    path = "/metrics/usage"
    expected_label = "RawTelemetryUsage"


class TelemetryKeysClientSideWorker(RecordingWorker):
    """Posts raw client-side unique keys."""

    path = "/keys/cs"
    expected_label = "RawKeysClientSide"


class TelemetryKeysServerSideWorker(RecordingWorker):
    """Posts raw server-side unique keys."""

    path = "/keys/ss"
    expected_label = "RawKeysServerSide"


def _worker_factory(
    worker_class: type[RecordingWorker], name: str, recorder: Recorder
) -> Callable[[], RecordingWorker]:
    counter = itertools.count()
    return lambda: worker_class(f"{name}_{next(counter)}", recorder)


def _flush_task(
    worker_class: type[RecordingWorker],
    name: str,
    recorder: Recorder,
    period: float,
    queue_size: int,
    threads: int,
) -> DeferredRecordingTask:
    return DeferredRecordingTask(
        _worker_factory(worker_class, name, recorder), period, queue_size, threads
    )


def new_events_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged event bulks."""
    return _flush_task(EventWorker, "events-worker", recorder, period, queue_size, threads)


def new_impressions_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged impression bulks."""
    return _flush_task(
        ImpressionWorker, "impressions-worker", recorder, period, queue_size, threads
    )


def new_impression_count_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged impression counts."""
    return _flush_task(
        ImpressionCountWorker, "impressions-count-worker", recorder, period, queue_size, threads
    )


def new_telemetry_config_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged configuration telemetry."""
    return _flush_task(
        TelemetryConfigWorker, "telemetry-config-worker", recorder, period, queue_size, threads
    )


def new_telemetry_usage_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged usage telemetry."""
    return _flush_task(
        TelemetryUsageWorker, "telemetry-config-worker", recorder, period, queue_size, threads
    )


def new_telemetry_keys_client_side_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged client-side unique keys."""
    return _flush_task(
        TelemetryKeysClientSideWorker,
        "telemetry-keys-client-side-worker",
        recorder,
        period,
        queue_size,
        threads,
    )


def new_telemetry_keys_server_side_flush_task(
    recorder: Recorder, period: float, queue_size: int, threads: int
) -> DeferredRecordingTask:
    """Create a task that posts staged server-side unique keys."""
    return _flush_task(
        TelemetryKeysServerSideWorker,
        "telemetry-keys-server-side-worker",
        recorder,
        period,
        queue_size,
        threads,
    )