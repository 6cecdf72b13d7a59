"""Per-endpoint latency and status code tracking for the proxy's own endpoints."""

from __future__ import annotations

import bisect
import threading
from collections import Counter
from datetime import timedelta
from enum import IntEnum

# Upper bounds (in microseconds) of each latency bucket, growing by a factor of 1.5.
LATENCY_BUCKETS = (
    1000, 1500, 2250, 3375, 5063,
    7594, 11391, 17086, 25629, 38443,
    57665, 86498, 129746, 194620, 291929,
    437894, 656841, 985261, 1477892, 2216838,
    3325257, 4987885, 7481828,
)
LATENCY_BUCKET_COUNT = len(LATENCY_BUCKETS)


class Endpoint(IntEnum):
    """Endpoints served by the proxy whose activity is tracked."""

    AUTH = 0
    SPLIT_CHANGES = 1
    SEGMENT_CHANGES = 2
    MY_SEGMENTS = 3
    IMPRESSIONS_BULK = 4
    IMPRESSIONS_BULK_BEACON = 5
    IMPRESSIONS_COUNT = 6
    IMPRESSIONS_COUNT_BEACON = 7
    EVENTS_BULK = 8
    EVENTS_BULK_BEACON = 9
    TELEMETRY_CONFIG = 10
    TELEMETRY_RUNTIME = 11
    LEGACY_TIME = 12
    LEGACY_TIMES = 13
    LEGACY_COUNTER = 14
    LEGACY_COUNTERS = 15
    LEGACY_GAUGE = 16
    TELEMETRY_RUNTIME_BEACON = 17
    TELEMETRY_KEYS_CLIENT_SIDE = 18
    TELEMETRY_KEYS_CLIENT_SIDE_BEACON = 19
    TELEMETRY_KEYS_SERVER_SIDE = 20


def _as_endpoint(endpoint: int) -> Endpoint | None:
    try:
        return Endpoint(endpoint)
    except ValueError:
        return None


def latency_bucket(milliseconds: int) -> int:
    """Return the index of the latency bucket a duration in milliseconds falls into."""
    index = bisect.bisect_left(LATENCY_BUCKETS, milliseconds * 1000)
    return min(index, LATENCY_BUCKET_COUNT - 1)


def _to_milliseconds(latency: timedelta | float) -> int:
    if isinstance(latency, timedelta):
        return latency // timedelta(milliseconds=1)
    return int(latency * 1000)


class EndpointStatusCodes:
    """Counts the HTTP status codes returned by each endpoint."""

    def __init__(self) -> None:
        self._codes: dict[Endpoint, Counter[int]] = {endpoint: Counter() for endpoint in Endpoint}
        self._lock = threading.Lock()

    def incr_endpoint_status(self, endpoint: int, status: int) -> None:
        """Count one more response with `status` for `endpoint`; unknown endpoints are ignored."""
        known = _as_endpoint(endpoint)
        if known is None:
            return
        with self._lock:
            self._codes[known][status] += 1

    def peek_endpoint_status(self, endpoint: int) -> dict[int, int] | None:
        """Return a copy of the status code counts of `endpoint`, or None if it is unknown."""
        known = _as_endpoint(endpoint)
        if known is None:
            return None
        with self._lock:
            return dict(self._codes[known])


class EndpointLatencies:
    """Keeps a bucketed latency histogram for each endpoint."""

    def __init__(self) -> None:
        self._latencies: dict[Endpoint, list[int]] = {
            endpoint: [0] * LATENCY_BUCKET_COUNT for endpoint in Endpoint
        }
        self._lock = threading.Lock()

    def record_endpoint_latency(self, endpoint: int, latency: timedelta | float) -> None:
        """Record a latency (a timedelta, or seconds) for `endpoint`; unknown endpoints are ignored."""
        known = _as_endpoint(endpoint)
        if known is None:
            return
        # config and runtime telemetry latencies are recorded crosswise
        if known is Endpoint.TELEMETRY_CONFIG:
            known = Endpoint.TELEMETRY_RUNTIME
        elif known is Endpoint.TELEMETRY_RUNTIME:
            known = Endpoint.TELEMETRY_CONFIG
        bucket = latency_bucket(_to_milliseconds(latency))
        with self._lock:
            self._latencies[known][bucket] += 1

    def peek_endpoint_latency(self, endpoint: int) -> list[int] | None:
        """Return a copy of the latency histogram of `endpoint`, or None if it is unknown."""
        known = _as_endpoint(endpoint)
        if known is None:
            return None
        with self._lock:
            return list(self._latencies[known])


class ProxyTelemetryFacade:
    """Bundles endpoint latencies and status codes behind one interface."""

    def __init__(self) -> None:
        self.latencies = EndpointLatencies()
        self.status_codes = EndpointStatusCodes()

    def record_endpoint_latency(self, endpoint: int, latency: timedelta | float) -> None:
        """Record a latency for `endpoint`."""
        self.latencies.record_endpoint_latency(endpoint, latency)

    def peek_endpoint_latency(self, endpoint: int) -> list[int] | None:
        """Return the latency histogram of `endpoint`."""
        return self.latencies.peek_endpoint_latency(endpoint)

    def incr_endpoint_status(self, endpoint: int, status: int) -> None:
        """Count a response status for `endpoint`."""
        self.status_codes.incr_endpoint_status(endpoint, status)

    def peek_endpoint_status(self, endpoint: int) -> dict[int, int] | None:
        """Return the status code counts of `endpoint`."""
        return self.status_codes.peek_endpoint_status(endpoint)