"""Per-key index of the segments each key belongs to."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any


class MySegmentsCache:
    """Maps each key to the list of segments it belongs to."""

    def __init__(self) -> None:
        self._my_segments: dict[str, list[str]] = {}
        self._lock = threading.RLock()

    def key_count(self) -> int:
        """Return how many keys belong to at least one segment."""
        with self._lock:
            return len(self._my_segments)

    def segments_for_user(self, key: str) -> list[str]:
        """Return the segments `key` belongs to."""
        with self._lock:
            return list(self._my_segments.get(key, ()))

    def update(self, name: str, to_add: Iterable[Any], to_remove: Iterable[Any]) -> None:
        """Add segment `name` to the keys in `to_add` and drop it from those in `to_remove`.

        Valid keys are applied even when some are not strings; a ValueError
        naming the invalid ones is raised afterwards.
        """
        invalid_added: list[str] = []
        invalid_removed: list[str] = []
        with self._lock:
            for key in to_add:
                if not isinstance(key, str):
                    invalid_added.append(f"{type(key).__name__}::{key!r}")
                    continue
                self._add_segment_to_user(key, name)

            for key in to_remove:
                if not isinstance(key, str):
                    invalid_removed.append(f"{type(key).__name__}::{key!r}")
                    continue
                self._remove_segment_for_user(key, name)

        if invalid_added or invalid_removed:
            raise ValueError(
                "invalid added and removed keys found: "
                f"{','.join(invalid_added)} // {','.join(invalid_removed)}"
            )

    def _add_segment_to_user(self, key: str, segment: str) -> None:
        segments = self._my_segments.setdefault(key, [])
        if segment not in segments:
            segments.append(segment)

    def _remove_segment_for_user(self, key: str, segment: str) -> None:
        segments = self._my_segments.get(key)
        if segments is None:
            return
        remaining = [s for s in segments if s != segment]
        if remaining:
            self._my_segments[key] = remaining
        else:
            del self._my_segments[key]