"""Persistent collections of segment and feature flag changes."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from splitproxy.dtos import SplitDTO
from splitproxy.persistent import (
    BucketNotFoundError,
    CollectionWrapper,
    DBWrapper,
    KeyNotFoundError,
)

_SEGMENT_CHANGES_COLLECTION = "SEGMENT_CHANGES_COLLECTION"
_SPLIT_CHANGES_COLLECTION = "SPLIT_CHANGES_COLLECTION"

_logger = logging.getLogger(__name__)


@dataclass
class SegmentKey:
    """A key of a segment with the change number of its last update."""

    name: str
    change_number: int
    removed: bool = False


@dataclass
class SegmentChangesItem:
    """Every key ever seen in a segment, with its current state."""

    name: str = ""
    keys: dict[str, SegmentKey] = field(default_factory=dict)

    @classmethod
    def _decode(cls, raw: bytes) -> SegmentChangesItem:
        data = json.loads(raw)
        keys = {
            key: SegmentKey(
                name=value["name"],
                change_number=value["change_number"],
                removed=value["removed"],
            )
            for key, value in data["keys"].items()
        }
        return cls(name=data["name"], keys=keys)


class SegmentChangesCollection:
    """Persists segment key changes and tracks each segment's change number."""

    def __init__(self, db: DBWrapper, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _logger
        self._collection = CollectionWrapper(db, _SEGMENT_CHANGES_COLLECTION, self._logger)
        self._segments_till: dict[str, int] = {}
        self._mutex = threading.RLock()

    def update(
        self,
        name: str,
        to_add: Iterable[Any],
        to_remove: Iterable[Any],
        change_number: int,
    ) -> None:
        """Mark keys as added or removed in a segment at ``change_number``."""
        with self._mutex:
            try:
                item = self._fetch(name)
            except (BucketNotFoundError, KeyNotFoundError):
                item = SegmentChangesItem(name=name)

            for removed, keys in ((True, to_remove), (False, to_add)):
                for key in keys:
                    if not isinstance(key, str):
                        self._logger.error(
                            "skipping non-string key when updating segment %s: %r", name, key
                        )
                        continue
                    item.keys[key] = SegmentKey(name=key, change_number=change_number, removed=removed)

            self._collection.save_as(name, item)
            self._segments_till[name] = change_number

    def fetch(self, name: str) -> SegmentChangesItem:
        """Return the stored changes of a segment."""
        with self._mutex:
            return self._fetch(name)

    def _fetch(self, name: str) -> SegmentChangesItem:
        raw = self._collection.fetch_by(name)
        try:
            return SegmentChangesItem._decode(raw)
        except (ValueError, KeyError, TypeError) as exc:
            self._logger.error("decode error: %s", exc)
            return SegmentChangesItem()

    def fetch_all(self) -> list[SegmentChangesItem]:
        """Return the stored changes of every segment."""
        with self._mutex:
            raw_items = self._collection.fetch_all()
        result = []
        for raw in raw_items:
            try:
                result.append(SegmentChangesItem._decode(raw))
            except (ValueError, KeyError, TypeError) as exc:
                self._logger.error("decode error: %s", exc)
        return result

    def change_number(self, segment: str) -> int:
        """Return the last change number of a segment, or -1 if unknown."""
        with self._mutex:
            return self._segments_till.get(segment, -1)

    def set_change_number(self, segment: str, change_number: int) -> None:
        """Set the change number of a segment."""
        with self._mutex:
            self._segments_till[segment] = change_number


@dataclass
class SplitChangesItem:
    """A stored feature flag: summary fields plus its JSON definition."""

    change_number: int
    name: str
    status: str
    payload: str

    def _to_dict(self) -> dict[str, Any]:
        return {
            "changeNumber": self.change_number,
            "name": self.name,
            "status": self.status,
            "json": self.payload,
        }

    @classmethod
    def _decode(cls, raw: bytes) -> SplitChangesItem:
        data = json.loads(raw)
        return cls(
            change_number=data["changeNumber"],
            name=data["name"],
            status=data["status"],
            payload=data["json"],
        )


class SplitChangesCollection:
    """Persists feature flag definitions along with the latest change number."""

    def __init__(self, db: DBWrapper, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _logger
        self._collection = CollectionWrapper(db, _SPLIT_CHANGES_COLLECTION, self._logger)
        self._change_number = 0
        self._mutex = threading.RLock()

    def update(
        self,
        to_add: Iterable[SplitDTO] | None,
        to_remove: Iterable[SplitDTO] | None,
        change_number: int,
    ) -> None:
        """Store added and removed flags and bump the change number."""
        items = [
            SplitChangesItem(
                change_number=split.change_number,
                name=split.name,
                status=split.status,
                payload=json.dumps(split.to_dict()),
            )
            for split in [*(to_add or ()), *(to_remove or ())]
        ]
        with self._mutex:
            for item in items:
                try:
                    self._collection.save_as(item.name, item._to_dict())
                except Exception as exc:  # keep going with the remaining flags
                    self._logger.error("error saving feature flag %s: %s", item.name, exc)
            self._change_number = change_number

    def fetch_all(self) -> list[SplitDTO]:
        """Return every stored feature flag, ordered by name."""
        with self._mutex:
            raw_items = self._collection.fetch_all()
        result = []
        for raw in raw_items:
            try:
                item = SplitChangesItem._decode(raw)
            except (ValueError, KeyError, TypeError) as exc:
                self._logger.error("decode error: %s | %r", exc, raw)
                continue
            try:
                result.append(SplitDTO.from_dict(json.loads(item.payload)))
            except (ValueError, TypeError, AttributeError) as exc:
                self._logger.error(
                    "error decoding feature flag fetched from db: %s | %s", exc, item.payload
                )
        return result

    def change_number(self) -> int:
        """Return the change number of the last update."""
        with self._mutex:
            return self._change_number