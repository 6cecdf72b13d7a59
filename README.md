# splitproxy

Building blocks for a proxy that sits between feature-flag SDKs and the
backend that serves flag and segment data. The proxy caches what it fetches,
answers SDK requests from that cache, and forwards what SDKs post.

The package uses only the standard library.

## What is inside

- `splitproxy.dtos`: the payload types. `SplitDTO` (with `to_dict()` and
  `SplitDTO.from_dict()` for its JSON form), `SplitChangesDTO`,
  `SegmentChangesDTO`, request `Metadata`, and the `RawData` /
  `RawImpressions` wrappers for bodies posted by SDKs.
- `splitproxy.persistent`: a small key/value store, kept in an SQLite file,
  made of named collections. `open_db(path)` opens one; `":memory:"` gives a
  temporary database file that is deleted when it is closed. `DBWrapper`
  can be used as a context manager and `get_raw_snapshot()` dumps its
  contents. `CollectionWrapper` saves, fetches and deletes items;
  `BucketNotFoundError` and `KeyNotFoundError` report a missing collection
  or a missing key. `itob` / `btoi` convert between integers and 8-byte big
  endian keys.
- `splitproxy.persistent_changes`: `SplitChangesCollection` and
  `SegmentChangesCollection` keep feature flags and segment keys on disk so
  that a restarted proxy can restore its state.
- `splitproxy.historic`: `HistoricChanges` keeps one `FeatureView` per flag.
  Each view records when the flag last changed and which flag sets
  (`FlagSetView`) it belongs to, so that `splitChanges` answers can be built
  for any `since`, filtered by flag set.
- `splitproxy.mysegments`: `MySegmentsCache` maps a user key to the
  segments the key belongs to.
- `splitproxy.segments`: `ProxySegmentStorage` answers `segmentChanges`
  and `mySegments` requests. `changes_since()` raises
  `SegmentNotFoundError` for a segment that is not cached.
- `splitproxy.splits`: `ProxySplitStorage` answers `splitChanges` requests
  from an in-memory `SplitSnapshot`, the change history and a disk backup.
  `changes_since()` raises `SinceParamTooOldError` when the requested change
  number is older than anything it knows. Features that are no longer active
  are returned as ARCHIVED definitions built by `archived_dto_for_view()`.
- `splitproxy.deferred`: `DeferredRecordingTask` queues posted payloads with
  `stage()` and hands them to worker threads, periodically once `start()`
  has been called, as soon as the queue becomes full, or on `flush()`.
  `stage()` raises `QueueFullError` when there is no room.
- `splitproxy.workers`: `EventWorker`, `ImpressionWorker`,
  `ImpressionCountWorker` and the telemetry workers post one kind of raw
  payload each through a recorder object. The `new_*_flush_task` factories
  build a `DeferredRecordingTask` for each of them.
- `splitproxy.telemetry`: per-endpoint latency buckets and status-code
  counts (`Endpoint`, `EndpointLatencies`, `EndpointStatusCodes`,
  `ProxyTelemetryFacade`, `latency_bucket()`).
- `splitproxy.telemetryts`: `TimeslicedProxyEndpointTelemetry` wraps a
  facade and also keeps a rolling, size-limited history by time slice,
  reported with `timesliced_report()` and `total_metrics_report()`.

## Example

```python
from splitproxy.dtos import SplitDTO
from splitproxy.persistent import open_db
from splitproxy.splits import ProxySplitStorage

with open_db(":memory:") as db:
    storage = ProxySplitStorage(db)
    storage.update(
        [SplitDTO(name="f1", change_number=1, status="ACTIVE", sets=["s1"])],
        [],
        1,
    )
    changes = storage.changes_since(-1, ["s1"])
    print(changes.till, [split.name for split in changes.splits])  # 1 ['f1']
```

## What it does not do

The package holds no HTTP server, routing, API-key checks or command-line
program, and it does not fetch data from the backend itself. The workers
post through whatever recorder object they are given: anything with a
`record_raw(path, payload, metadata, extra_headers)` method.

## Running the tests

```
pip install -e ".[test]"
pytest
```