"""Proxy endpoint telemetry that also keeps recent activity split into time slices."""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any

from splitproxy.telemetry import (
    Endpoint,
    EndpointLatencies,
    EndpointStatusCodes,
    ProxyTelemetryFacade,
)


class Granularity(IntEnum):
    """Width choices for the historic telemetry time slices."""

    MINUTE = 0
    HOUR = 1
    DAY = 2


# Report resource names and the endpoint each one is read from.
_RESOURCES: tuple[tuple[str, Endpoint], ...] = (
    ("auth", Endpoint.AUTH),
    ("splitChanges", Endpoint.SPLIT_CHANGES),
    ("segmentChanges", Endpoint.SEGMENT_CHANGES),
    ("mySegments", Endpoint.MY_SEGMENTS),
    ("impressionsBulk", Endpoint.IMPRESSIONS_BULK),
    ("impressionsBulkBeacon", Endpoint.IMPRESSIONS_BULK_BEACON),
    ("impressionsCount", Endpoint.IMPRESSIONS_COUNT),
    ("impressionsCountBeacon", Endpoint.IMPRESSIONS_COUNT_BEACON),
    ("eventsBulk", Endpoint.EVENTS_BULK),
    ("eventsBulkBeacon", Endpoint.EVENTS_BULK_BEACON),
    ("telemetryConfig", Endpoint.TELEMETRY_CONFIG),
    ("telemetryRuntime", Endpoint.TELEMETRY_RUNTIME),
    ("telemetryBeaconRuntime", Endpoint.TELEMETRY_RUNTIME_BEACON),
    ("telemetryKeysClientSide", Endpoint.TELEMETRY_KEYS_CLIENT_SIDE),
    ("telemetryKeysClientSideBeacon", Endpoint.TELEMETRY_KEYS_CLIENT_SIDE_BEACON),
    ("telemetryKeysServerSide", Endpoint.TELEMETRY_KEYS_SERVER_SIDE),
)

# In per-slice reports, the unique-keys resources take their status codes from runtime telemetry.
_SLICE_STATUS_SOURCE: dict[Endpoint, Endpoint] = {
    Endpoint.TELEMETRY_KEYS_CLIENT_SIDE: Endpoint.TELEMETRY_RUNTIME,
    Endpoint.TELEMETRY_KEYS_CLIENT_SIDE_BEACON: Endpoint.TELEMETRY_RUNTIME,
    Endpoint.TELEMETRY_KEYS_SERVER_SIDE: Endpoint.TELEMETRY_RUNTIME,
}


def key_for_time_slice(moment: datetime, width: int) -> int:
    """Return the unix timestamp at which the `width`-second slice holding `moment` starts."""
    current = math.floor(moment.timestamp())
    return current - (current % width)


@dataclass
class ForResource:
    """Latencies, status codes and request count of one resource."""

    latencies: list[int]
    status_codes: dict[int, int]
    request_count: int

    @classmethod
    def from_counts(cls, latencies: list[int] | None, status_codes: dict[int, int] | None) -> ForResource:
        """Build a record whose request count is the sum of the status code counts."""
        codes = dict(status_codes or {})
        return cls(latencies=list(latencies or []), status_codes=codes, request_count=sum(codes.values()))

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation of this record."""
        return {
            "latencies": list(self.latencies),
            "statusCodes": dict(self.status_codes),
            "requestCount": self.request_count,
        }


@dataclass
class ForTimeSlice:
    """Every resource's data for one time slice."""

    time_slice: int
    resources: dict[str, ForResource] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation of this slice."""
        return {
            "timeslice": self.time_slice,
            "resources": {name: res.to_dict() for name, res in self.resources.items()},
        }


@dataclass
class _SliceTelemetry:
    time_slice: int
    status_codes: EndpointStatusCodes = field(default_factory=EndpointStatusCodes)
    latencies: EndpointLatencies = field(default_factory=EndpointLatencies)

    def report(self) -> ForTimeSlice:
        return ForTimeSlice(
            time_slice=self.time_slice,
            resources={
                name: ForResource.from_counts(
                    self.latencies.peek_endpoint_latency(endpoint),
                    self.status_codes.peek_endpoint_status(_SLICE_STATUS_SOURCE.get(endpoint, endpoint)),
                )
                for name, endpoint in _RESOURCES
            },
        )


def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


class TimeslicedProxyEndpointTelemetry:
    """Wraps a telemetry facade, also keeping per-time-slice records of recent activity.

    Only the newest `max_time_slices` slices are kept.
    """

    def __init__(
        self,
        wrapped: ProxyTelemetryFacade,
        width: int,
        max_time_slices: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.wrapped = wrapped
        self._width = width
        self._max_time_slices = max_time_slices
        self._clock = clock or _system_clock
        self._slices: dict[int, _SliceTelemetry] = {}
        self._lock = threading.Lock()

    def total_metrics_report(self) -> dict[str, ForResource]:
        """Return the global metrics of every reported resource."""
        return {
            name: ForResource.from_counts(
                self.peek_endpoint_latency(endpoint), self.peek_endpoint_status(endpoint)
            )
            for name, endpoint in _RESOURCES
        }

    def timesliced_report(self) -> list[ForTimeSlice]:
        """Return the kept time slices, oldest first."""
        with self._lock:
            slices = sorted(self._slices.values(), key=lambda s: s.time_slice)
        return [s.report() for s in slices]

    def record_endpoint_latency(self, endpoint: int, latency: timedelta | float) -> None:
        """Record a latency globally and in the current time slice."""
        self.wrapped.record_endpoint_latency(endpoint, latency)
        self._slice_for(self._clock()).latencies.record_endpoint_latency(endpoint, latency)

    def incr_endpoint_status(self, endpoint: int, status: int) -> None:
        """Count a response status globally and in the current time slice."""
        self.wrapped.incr_endpoint_status(endpoint, status)
        self._slice_for(self._clock()).status_codes.incr_endpoint_status(endpoint, status)

    def peek_endpoint_latency(self, endpoint: int) -> list[int] | None:
        """Return the global latency histogram of `endpoint`."""
        return self.wrapped.peek_endpoint_latency(endpoint)

    def peek_endpoint_status(self, endpoint: int) -> dict[int, int] | None:
        """Return the global status code counts of `endpoint`."""
        return self.wrapped.peek_endpoint_status(endpoint)

    def _slice_for(self, moment: datetime) -> _SliceTelemetry:
        key = key_for_time_slice(moment, self._width)
        with self._lock:
            current = self._slices.get(key)
            if current is None:
                current = _SliceTelemetry(key)
                self._slices[key] = current
                self._rollover()
            return current

    def _rollover(self) -> None:
        excess = len(self._slices) - self._max_time_slices
        if excess <= 0:
            return
        for key in sorted(self._slices)[:excess]:
            del self._slices[key]