from datetime import datetime, timedelta, timezone

import pytest

from splitproxy.telemetry import Endpoint, ProxyTelemetryFacade
from splitproxy.telemetryts import (
    ForResource,
    ForTimeSlice,
    Granularity,
    TimeslicedProxyEndpointTelemetry,
    key_for_time_slice,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)

ENDPOINTS = [
    Endpoint.AUTH,
    Endpoint.SPLIT_CHANGES,
    Endpoint.SEGMENT_CHANGES,
    Endpoint.MY_SEGMENTS,
    Endpoint.IMPRESSIONS_BULK,
    Endpoint.IMPRESSIONS_BULK_BEACON,
    Endpoint.IMPRESSIONS_COUNT,
    Endpoint.IMPRESSIONS_COUNT_BEACON,
    Endpoint.EVENTS_BULK,
    Endpoint.EVENTS_BULK_BEACON,
    Endpoint.TELEMETRY_CONFIG,
    Endpoint.TELEMETRY_RUNTIME,
    Endpoint.TELEMETRY_RUNTIME_BEACON,
    Endpoint.TELEMETRY_KEYS_CLIENT_SIDE,
    Endpoint.TELEMETRY_KEYS_CLIENT_SIDE_BEACON,
    Endpoint.TELEMETRY_KEYS_SERVER_SIDE,
]

RESOURCE_NAMES = [
    "auth",
    "splitChanges",
    "segmentChanges",
    "mySegments",
    "impressionsBulk",
    "impressionsBulkBeacon",
    "impressionsCount",
    "impressionsCountBeacon",
    "eventsBulk",
    "eventsBulkBeacon",
    "telemetryConfig",
    "telemetryRuntime",
    "telemetryBeaconRuntime",
    "telemetryKeysClientSide",
    "telemetryKeysClientSideBeacon",
    "telemetryKeysServerSide",
]


class MockClock:
    def __init__(self, base):
        self.base = base
        self.count = 0

    def __call__(self):
        self.count += 1
        return self.base + timedelta(milliseconds=self.count)


def _record_round(telemetry, long_latency):
    for endpoint in ENDPOINTS:
        telemetry.record_endpoint_latency(endpoint, timedelta(microseconds=0.001))
        telemetry.record_endpoint_latency(endpoint, long_latency)
        telemetry.incr_endpoint_status(endpoint, 200)
        telemetry.incr_endpoint_status(endpoint, 500)


def test_historic_proxy_telemetry():
    clock = MockClock(BASE)
    timesliced = TimeslicedProxyEndpointTelemetry(ProxyTelemetryFacade(), 60, 5, clock=clock)
    oldest = key_for_time_slice(BASE, 60)

    for _ in range(5):
        _record_round(timesliced, timedelta(hours=5))
        clock.base = clock.base + timedelta(seconds=60)

    report = timesliced.timesliced_report()
    assert len(report) == 5
    assert report[0].time_slice == oldest

    _record_round(timesliced, timedelta(hours=1))

    generated = timesliced.timesliced_report()
    assert len(generated) == 5
    assert oldest not in [s.time_slice for s in generated]

    expected_codes = {200: 1, 500: 1}
    expected_latencies = [1] + [0] * 21 + [1]
    expected = [
        ForTimeSlice(
            time_slice=ts,
            resources={
                name: ForResource(expected_latencies, expected_codes, 2) for name in RESOURCE_NAMES
            },
        )
        for ts in [oldest + 60, oldest + 120, oldest + 180, oldest + 240, oldest + 300]
    ]
    assert generated == expected

    total_latencies = [6] + [0] * 21 + [6]
    expected_total = {
        name: ForResource(total_latencies, {200: 6, 500: 6}, 12) for name in RESOURCE_NAMES
    }
    assert timesliced.total_metrics_report() == expected_total


def test_key_for_time_slice_truncates_to_width():
    moment = datetime.fromtimestamp(125, tz=timezone.utc)
    assert key_for_time_slice(moment, 60) == 120
    assert key_for_time_slice(moment, 3600) == 0


def test_for_resource_from_counts_sums_status_codes():
    resource = ForResource.from_counts([1, 2], {200: 3, 404: 2})
    assert resource.request_count == 5
    assert resource.to_dict() == {
        "latencies": [1, 2],
        "statusCodes": {200: 3, 404: 2},
        "requestCount": 5,
    }


def test_rollover_keeps_only_newest_slices():
    clock = MockClock(BASE)
    timesliced = TimeslicedProxyEndpointTelemetry(ProxyTelemetryFacade(), 60, 2, clock=clock)
    for _ in range(4):
        timesliced.incr_endpoint_status(Endpoint.AUTH, 200)
        clock.base = clock.base + timedelta(seconds=60)
    start = key_for_time_slice(BASE, 60)
    assert [s.time_slice for s in timesliced.timesliced_report()] == [start + 120, start + 180]
    assert timesliced.peek_endpoint_status(Endpoint.AUTH) == {200: 4}


def test_peeks_delegate_to_wrapped_facade():
    facade = ProxyTelemetryFacade()
    timesliced = TimeslicedProxyEndpointTelemetry(facade, 60, 3, clock=MockClock(BASE))
    timesliced.incr_endpoint_status(Endpoint.MY_SEGMENTS, 404)
    timesliced.record_endpoint_latency(Endpoint.MY_SEGMENTS, timedelta(hours=2))
    assert facade.peek_endpoint_status(Endpoint.MY_SEGMENTS) == {404: 1}
    assert timesliced.peek_endpoint_latency(Endpoint.MY_SEGMENTS)[-1] == 1


def test_slice_unique_keys_status_codes_come_from_runtime():
    timesliced = TimeslicedProxyEndpointTelemetry(ProxyTelemetryFacade(), 60, 3, clock=MockClock(BASE))
    timesliced.incr_endpoint_status(Endpoint.TELEMETRY_RUNTIME, 200)
    (only,) = timesliced.timesliced_report()
    assert only.resources["telemetryKeysClientSide"].status_codes == {200: 1}
    assert only.resources["telemetryKeysServerSide"].request_count == 1
    assert timesliced.total_metrics_report()["telemetryKeysClientSide"].request_count == 0


@pytest.mark.parametrize(
    "granularity, value",
    [(Granularity.MINUTE, 0), (Granularity.HOUR, 1), (Granularity.DAY, 2)],
)
def test_granularity_values(granularity, value):
    assert Granularity(value) is granularity