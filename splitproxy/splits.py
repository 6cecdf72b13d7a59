"""Feature flag storage used to answer splitChanges requests for any `since`."""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from collections.abc import Iterable

from splitproxy.dtos import SplitChangesDTO, SplitDTO
from splitproxy.historic import FeatureView, HistoricChanges
from splitproxy.persistent import DBWrapper
from splitproxy.persistent_changes import SplitChangesCollection

MAX_RECIPES = 1000

_logger = logging.getLogger(__name__)


class SinceParamTooOldError(LookupError):
    """Raised when no summary is cached for the requested change number."""

    def __init__(self, message: str = "summary for requested change number not cached") -> None:
        super().__init__(message)


class SplitSnapshot:
    """In-memory snapshot of the latest known feature flag definitions."""

    def __init__(self, flag_sets: Iterable[str] | None = None) -> None:
        allowed = frozenset(flag_sets or ())
        self._filter = allowed or None
        self._splits: dict[str, SplitDTO] = {}
        self._change_number = -1
        self._lock = threading.RLock()

    def _set_allowed(self, name: str) -> bool:
        return self._filter is None or name in self._filter

    def update(
        self,
        to_add: Iterable[SplitDTO] | None,
        to_remove: Iterable[SplitDTO] | None,
        change_number: int,
    ) -> None:
        """Store added flags, drop removed ones and set the change number."""
        with self._lock:
            for split in to_add or ():
                self._splits[split.name] = copy.deepcopy(split)
            for split in to_remove or ():
                self._splits.pop(split.name, None)
            self._change_number = change_number

    def change_number(self) -> int:
        """Return the change number of the snapshot, -1 if never updated."""
        with self._lock:
            return self._change_number

    def set_change_number(self, change_number: int) -> None:
        """Set the change number of the snapshot."""
        with self._lock:
            self._change_number = change_number

    def kill_locally(self, split_name: str, default_treatment: str, change_number: int) -> None:
        """Mark a flag as killed if the kill is newer than its definition."""
        with self._lock:
            split = self._splits.get(split_name)
            if split is None or split.change_number >= change_number:
                return
            split.killed = True
            split.default_treatment = default_treatment
            split.change_number = change_number

    def remove(self, name: str) -> None:
        """Drop a flag by name."""
        with self._lock:
            self._splits.pop(name, None)

    def all(self) -> list[SplitDTO]:
        """Return copies of every stored flag."""
        with self._lock:
            return [copy.deepcopy(split) for split in self._splits.values()]

    def fetch_many(self, names: Iterable[str]) -> dict[str, SplitDTO | None]:
        """Return copies of the named flags; missing ones map to None."""
        with self._lock:
            return {
                name: copy.deepcopy(self._splits[name]) if name in self._splits else None
                for name in names
            }

    def split(self, name: str) -> SplitDTO | None:
        """Return a copy of a flag, or None if it is not stored."""
        with self._lock:
            split = self._splits.get(name)
            return None if split is None else copy.deepcopy(split)

    def split_names(self) -> list[str]:
        """Return the names of every stored flag."""
        with self._lock:
            return list(self._splits)

    def segment_names(self) -> set[str]:
        """Return the names of the segments referenced by stored flags."""
        names: set[str] = set()
        with self._lock:
            for split in self._splits.values():
                for condition in split.conditions:
                    matchers = (condition.get("matcherGroup") or {}).get("matchers") or ()
                    for matcher in matchers:
                        data = matcher.get("userDefinedSegmentMatcherData") or {}
                        segment = data.get("segmentName")
                        if segment:
                            names.add(segment)
        return names

    def traffic_type_exists(self, traffic_type: str) -> bool:
        """Tell whether any stored flag uses the given traffic type."""
        with self._lock:
            return any(s.traffic_type_name == traffic_type for s in self._splits.values())

    def get_names_by_flag_sets(self, sets: Iterable[str]) -> dict[str, list[str]]:
        """Return, for each requested flag set, the names of the flags in it."""
        requested = [s for s in sets if self._set_allowed(s)]
        result: dict[str, list[str]] = {name: [] for name in requested}
        with self._lock:
            for split in self._splits.values():
                for flag_set in split.sets:
                    if flag_set in result and split.name not in result[flag_set]:
                        result[flag_set].append(split.name)
        return {name: sorted(names) for name, names in result.items()}

    def get_all_flag_set_names(self) -> list[str]:
        """Return the names of every flag set used by stored flags."""
        with self._lock:
            return sorted(
                {fs for split in self._splits.values() for fs in split.sets if self._set_allowed(fs)}
            )


def archived_dto_for_view(view: FeatureView) -> SplitDTO:
    """Build the ARCHIVED flag definition that stands for an inactive feature."""
    return SplitDTO(
        change_number=view.last_updated,
        traffic_type_name=view.traffic_type_name,
        name=view.name,
        traffic_allocation=100,
        traffic_allocation_seed=0,
        seed=0,
        status="ARCHIVED",
        killed=False,
        default_treatment="off",
        algo=1,
        conditions=[],
        sets=view.flag_set_names(),
    )


class ProxySplitStorage:
    """Snapshot, change history and persistent backup of feature flags."""

    def __init__(
        self,
        db: DBWrapper,
        logger: logging.Logger | None = None,
        flag_sets: Iterable[str] | None = None,
        restore_backup: bool = False,
    ) -> None:
        self._logger = logger or _logger
        self._db = SplitChangesCollection(db, self._logger)
        self._snapshot = SplitSnapshot(flag_sets)
        self._historic = HistoricChanges()
        self._lock = threading.Lock()
        self._oldest_known_cn = self._snapshot_from_disk() if restore_backup else -1

    def changes_since(self, since: int, flag_sets: Iterable[str] | None = None) -> SplitChangesDTO:
        """Build a splitChanges payload from `since` to the latest known change."""
        requested = list(flag_sets or ())
        if since == -1 and not requested:
            return SplitChangesDTO(
                since=since, till=self._snapshot.change_number(), splits=self._snapshot.all()
            )

        if self._since_is_too_old(since):
            raise SinceParamTooOldError()

        views = self._historic.get_updated_since(since, requested)
        till = since
        to_fetch: list[str] = []
        splits: list[SplitDTO] = []
        for view in views:
            till = max(till, view.last_updated)
            if view.active:
                to_fetch.append(view.name)
            else:
                splits.append(archived_dto_for_view(view))

        for name, split in self._snapshot.fetch_many(to_fetch).items():
            if split is None:
                self._logger.warning(
                    "possible inconsistency between historic & snapshot storages. "
                    "Feature `%s` is missing in the latter",
                    name,
                )
                continue
            splits.append(split)

        return SplitChangesDTO(since=since, till=till, splits=splits)

    def kill_locally(self, split_name: str, default_treatment: str, change_number: int) -> None:
        """Mark a feature flag as killed in the snapshot."""
        self._snapshot.kill_locally(split_name, default_treatment, change_number)

    def update(
        self,
        to_add: Iterable[SplitDTO] | None,
        to_remove: Iterable[SplitDTO] | None,
        change_number: int,
    ) -> None:
        """Apply flag changes to the snapshot, the history and the backup."""
        self._set_starting_point(change_number)
        added = list(to_add or ())
        removed = list(to_remove or ())
        if not added and not removed:
            return
        with self._lock:
            self._snapshot.update(added, removed, change_number)
            self._historic.update(added, removed, change_number)
            self._db.update(added, removed, change_number)

    def change_number(self) -> int:
        """Return the current change number."""
        return self._snapshot.change_number()

    def set_change_number(self, change_number: int) -> None:
        """Set the current change number."""
        self._snapshot.set_change_number(change_number)

    def remove(self, name: str) -> None:
        """Drop a flag from the snapshot."""
        self._snapshot.remove(name)

    def all(self) -> list[SplitDTO]:
        """Return every flag in the snapshot."""
        return self._snapshot.all()

    def fetch_many(self, names: Iterable[str]) -> dict[str, SplitDTO | None]:
        """Return the named flags from the snapshot."""
        return self._snapshot.fetch_many(names)

    def segment_names(self) -> set[str]:
        """Return the segments referenced by the snapshot's flags."""
        return self._snapshot.segment_names()

    def split(self, name: str) -> SplitDTO | None:
        """Return a flag from the snapshot, or None."""
        return self._snapshot.split(name)

    def split_names(self) -> list[str]:
        """Return the names of the snapshot's flags."""
        return self._snapshot.split_names()

    def traffic_type_exists(self, traffic_type: str) -> bool:
        """Tell whether any flag uses the given traffic type."""
        return self._snapshot.traffic_type_exists(traffic_type)

    def count(self) -> int:
        """Return the number of cached feature flags."""
        return len(self.split_names())

    def get_names_by_flag_sets(self, sets: Iterable[str]) -> dict[str, list[str]]:
        """Return the flag names in each of the requested flag sets."""
        return self._snapshot.get_names_by_flag_sets(sets)

    def get_all_flag_set_names(self) -> list[str]:
        """Return every flag set name in use."""
        return self._snapshot.get_all_flag_set_names()

    def _set_starting_point(self, change_number: int) -> None:
        with self._lock:
            if self._oldest_known_cn == -1 or change_number < self._oldest_known_cn:
                self._oldest_known_cn = change_number

    def _since_is_too_old(self, since: int) -> bool:
        if since == -1:
            return False
        with self._lock:
            return since < self._oldest_known_cn

    def _snapshot_from_disk(self) -> int:
        try:
            stored = self._db.fetch_all()
        except (LookupError, sqlite3.Error, OSError) as exc:
            self._logger.error(
                "error parsing feature flags from snapshot. No data will be available!: %s", exc
            )
            return -1

        change_number = self._db.change_number()
        active = []
        for split in stored:
            change_number = max(change_number, split.change_number)
            if split.status == "ACTIVE":
                active.append(split)

        self._snapshot.update(active, None, change_number)
        self._historic.update(active, None, change_number)
        return change_number