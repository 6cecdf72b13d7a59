"""History of feature flag changes, used to build splitChanges payloads for any `since`."""

from __future__ import annotations

import bisect
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace

from splitproxy.dtos import SplitDTO


@dataclass
class FlagSetView:
    """The association between a feature and a flag set."""

    name: str
    active: bool
    last_updated: int


@dataclass
class FeatureView:
    """A summary of a feature flag: its status, last update and flag sets."""

    name: str = ""
    active: bool = False
    last_updated: int = 0
    traffic_type_name: str = ""
    flag_sets: list[FlagSetView] = field(default_factory=list)

    def update_from(self, split: SplitDTO) -> None:
        """Refresh this view with the data of an incoming flag definition."""
        self.name = split.name
        self.active = split.status == "ACTIVE"
        self.last_updated = split.change_number
        self.traffic_type_name = split.traffic_type_name
        self._update_flag_sets(split.sets, split.change_number)

    def _update_flag_sets(self, sets: Iterable[str], last_updated: int) -> None:
        incoming = list(sets)
        for flag_set in self.flag_sets:
            if flag_set.name in incoming:
                if not flag_set.active:
                    flag_set.active = True
                    flag_set.last_updated = last_updated
                incoming.remove(flag_set.name)
            else:
                flag_set.active = False
                flag_set.last_updated = last_updated

        # whatever is left was not associated before, so it is new and active
        self.flag_sets.extend(FlagSetView(name, True, last_updated) for name in incoming)
        self.flag_sets.sort(key=lambda fs: fs.name)

    def flag_set_names(self) -> list[str]:
        """Return the names of every flag set ever associated with this feature."""
        return [flag_set.name for flag_set in self.flag_sets]

    def _clone(self) -> FeatureView:
        return replace(self, flag_sets=[replace(fs) for fs in self.flag_sets])


def _should_be_returned(view: FeatureView, since: int, sets: Sequence[str]) -> bool:
    # `sets` must be sorted, as must `view.flag_sets` (by name)
    if (since == -1 and not view.active) or view.last_updated < since:
        return False

    if not sets:
        return True

    limit = len(sets)

    def advance(index: int) -> int:
        return index if index + 1 >= limit else index + 1

    view_index = requested_index = 0
    while view_index < len(view.flag_sets):
        flag_set = view.flag_sets[view_index]
        requested = sets[requested_index]
        if flag_set.name == requested:
            # an association that was active at `since` and no longer is still counts
            if flag_set.active or (since > -1 and since < flag_set.last_updated):
                return True
            view_index += 1
            requested_index = advance(requested_index)
        elif flag_set.name < requested:
            view_index += 1
        else:
            requested_index = advance(requested_index)
            if requested_index + 1 == limit:
                view_index += 1
    return False


class HistoricChanges:
    """Feature views kept sorted by the change number of their last update."""

    def __init__(self) -> None:
        self._data: list[FeatureView] = []
        self._lock = threading.Lock()

    def get_updated_since(
        self, since: int, flag_sets: Iterable[str] | None = None
    ) -> list[FeatureView]:
        """Return copies of the features updated after `since`, filtered by flag sets."""
        requested = sorted(flag_sets or ())
        with self._lock:
            start = bisect.bisect_right(self._data, since, key=lambda v: v.last_updated)
            return [
                view._clone()
                for view in self._data[start:]
                if _should_be_returned(view, since, requested)
            ]

    def update(
        self,
        to_add: Iterable[SplitDTO] | None,
        to_remove: Iterable[SplitDTO] | None,
        change_number: int,
    ) -> None:
        """Apply added and removed flag definitions to the history."""
        with self._lock:
            for split in [*(to_add or ()), *(to_remove or ())]:
                current = self._find_by_name(split.name)
                if current is None:
                    current = FeatureView()
                    self._data.append(current)
                current.update_from(split)
            self._data.sort(key=lambda v: v.last_updated)

    def _find_by_name(self, name: str) -> FeatureView | None:
        return next((view for view in self._data if view.name == name), None)