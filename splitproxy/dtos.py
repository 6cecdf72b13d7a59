"""Data transfer objects exchanged between SDKs, the proxy and the backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Metadata:
    """Metadata an SDK attaches to the data it submits."""

    sdk_version: str = ""
    machine_ip: str = ""
    machine_name: str = ""


@dataclass
class RawData:
    """Raw payload submitted by an SDK together with its metadata."""

    metadata: Metadata
    payload: bytes


@dataclass
class RawImpressions(RawData):
    """Raw impressions bulk together with the impressions mode it was sent in."""

    mode: str = ""


@dataclass
class SplitDTO:
    """A feature flag definition as served by the splitChanges endpoint."""

    name: str = ""
    change_number: int = 0
    traffic_type_name: str = ""
    traffic_allocation: int = 0
    traffic_allocation_seed: int = 0
    seed: int = 0
    status: str = ""
    killed: bool = False
    default_treatment: str = ""
    algo: int = 0
    conditions: list[dict[str, Any]] = field(default_factory=list)
    configurations: dict[str, str] | None = None
    sets: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the wire (JSON) representation of this flag."""
        return {
            "changeNumber": self.change_number,
            "trafficTypeName": self.traffic_type_name,
            "name": self.name,
            "trafficAllocation": self.traffic_allocation,
            "trafficAllocationSeed": self.traffic_allocation_seed,
            "seed": self.seed,
            "status": self.status,
            "killed": self.killed,
            "defaultTreatment": self.default_treatment,
            "algo": self.algo,
            "conditions": [dict(c) for c in self.conditions],
            "configurations": None if self.configurations is None else dict(self.configurations),
            "sets": list(self.sets),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SplitDTO:
        """Build a flag from its wire (JSON) representation."""
        configurations = data.get("configurations")
        return cls(
            name=data.get("name") or "",
            change_number=data.get("changeNumber") or 0,
            traffic_type_name=data.get("trafficTypeName") or "",
            traffic_allocation=data.get("trafficAllocation") or 0,
            traffic_allocation_seed=data.get("trafficAllocationSeed") or 0,
            seed=data.get("seed") or 0,
            status=data.get("status") or "",
            killed=bool(data.get("killed", False)),
            default_treatment=data.get("defaultTreatment") or "",
            algo=data.get("algo") or 0,
            conditions=list(data.get("conditions") or []),
            configurations=None if configurations is None else dict(configurations),
            sets=list(data.get("sets") or []),
        )


@dataclass
class SplitChangesDTO:
    """A splitChanges response payload."""

    since: int
    till: int
    splits: list[SplitDTO] = field(default_factory=list)


@dataclass
class SegmentChangesDTO:
    """A segmentChanges response payload."""

    name: str
    since: int
    till: int
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)