"""Segment storage used to answer segmentChanges and mySegments requests."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable
from typing import Any

from splitproxy.dtos import SegmentChangesDTO
from splitproxy.mysegments import MySegmentsCache
from splitproxy.persistent import BucketNotFoundError, DBWrapper, KeyNotFoundError
from splitproxy.persistent_changes import SegmentChangesCollection

_logger = logging.getLogger(__name__)


class SegmentNotFoundError(LookupError):
    """Raised when the segment whose changes are requested is not cached."""

    def __init__(self, message: str = "segment not found") -> None:
        super().__init__(message)


class ProxySegmentStorage:
    """Combines persistent segment changes with an in-memory per-key index."""

    def __init__(
        self,
        db: DBWrapper,
        logger: logging.Logger | None = None,
        restore_from_backup: bool = False,
    ) -> None:
        self._logger = logger or _logger
        self._db = SegmentChangesCollection(db, self._logger)
        self._my_segments = MySegmentsCache()
        self._counts: dict[str, int] = {}
        self._counts_lock = threading.Lock()
        if restore_from_backup:
            self._populate_from_disk()

    def changes_since(self, name: str, since: int) -> SegmentChangesDTO:
        """Build a segmentChanges payload from `since` to the latest change.

        Every key removed after `since` is reported, except on initial
        (negative `since`) requests, which only carry present keys.
        """
        try:
            item = self._db.fetch(name)
        except (BucketNotFoundError, KeyNotFoundError) as exc:
            raise SegmentNotFoundError() from exc
        except Exception as exc:
            raise RuntimeError(f"unexpected error when fetching segment '{name}': {exc}") from exc

        added: list[str] = []
        removed: list[str] = []
        till = since
        for key in item.keys.values():
            if key.change_number <= since:
                continue
            if key.removed and since < 0:
                continue
            (removed if key.removed else added).append(key.name)
            till = max(till, key.change_number)

        return SegmentChangesDTO(name=name, since=since, till=till, added=added, removed=removed)

    def segments_for(self, key: str) -> list[str]:
        """Return the segments a key belongs to."""
        return self._my_segments.segments_for_user(key)

    def segment_keys_count(self) -> int:
        """Return how many keys belong to at least one segment."""
        return self._my_segments.key_count()

    def change_number(self, segment: str) -> int:
        """Return the change number of a segment, or -1 if unknown."""
        return self._db.change_number(segment)

    def set_change_number(self, segment: str, change_number: int) -> None:
        """Set the change number of a segment."""
        self._db.set_change_number(segment, change_number)

    def keys(self, segment_name: str) -> set[str]:
        """Return every key ever recorded in a segment, removed ones included."""
        try:
            changes = self._db.fetch(segment_name)
        except (BucketNotFoundError, KeyNotFoundError):
            self._logger.error("segment %s not found. failed to fetch keys.", segment_name)
            return set()
        except Exception as exc:
            self._logger.error(
                "unexpected error when fetching segment keys for '%s': %s", segment_name, exc
            )
            return set()
        return set(changes.keys)

    def segment_contains_key(self, segment_name: str, key: str) -> bool:
        """Return whether a key currently belongs to a segment, per the in-memory index."""
        return segment_name in self._my_segments.segments_for_user(key)

    def update(
        self,
        name: str,
        to_add: Iterable[Any],
        to_remove: Iterable[Any],
        change_number: int,
    ) -> None:
        """Apply added and removed keys to the cache and the persistent storage."""
        added = list(to_add)
        removed = list(to_remove)
        errors = []
        try:
            self._my_segments.update(name, added, removed)
        except ValueError as exc:
            errors.append(f"errors updating cache: {exc}")
        try:
            self._db.update(name, added, removed, change_number)
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            errors.append(f"errors updating db: {exc}")
        if errors:
            raise RuntimeError(" || ".join(errors))
        self._track(name, len(added), len(removed))

    def count_removed_keys(self, segment_name: str) -> int:
        """Return how many keys of a segment are marked as removed."""
        try:
            segment = self._db.fetch(segment_name)
        except Exception:
            return 0
        return sum(1 for key in segment.keys.values() if key.removed)

    def names_and_count(self) -> dict[str, int]:
        """Return each known segment's name with its estimated key count."""
        with self._counts_lock:
            return dict(self._counts)

    def _track(self, name: str, added: int, removed: int) -> None:
        with self._counts_lock:
            self._counts[name] = max(0, self._counts.get(name, 0) + added - removed)

    def _populate_from_disk(self) -> None:
        try:
            items = self._db.fetch_all()
        except Exception as exc:
            self._logger.error(
                "error popoulating segment cache from disk. Cache will be empty!: %s", exc
            )
            return
        for item in items:
            present = [key.name for key in item.keys.values() if not key.removed]
            self._my_segments.update(item.name, present, [])
            self._track(item.name, len(present), 0)