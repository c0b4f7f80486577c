"""Core data models shared by the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class Source(str, Enum):
    OSM = "OSM"
    PLANET_OSM = "PLANET_OSM"
    GOVERNMENT = "GOVERNMENT"
    MANUAL = "MANUAL"
    USER = "USER"
    REGIONAL = "REGIONAL"
    # Legacy inventory rows whose source predates the canonical enum.
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "Source":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class TrustLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QueryStrategy(str, Enum):
    BOUNDS = "bounds"
    STATIC_SEED = "static_seed"


class DecisionKind(str, Enum):
    KEEP_BOTH = "KEEP_BOTH"
    MERGE = "MERGE"
    REJECT = "REJECT"


ACCESS_VALUES = ("public", "customers", "private", "unknown")
GENDER_VALUES = ("male", "female", "unisex", "unknown")
WHEELCHAIR_VALUES = ("yes", "no", "unknown")


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Geographic query window in decimal degrees."""

    south: float
    west: float
    north: float
    east: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.south <= 90.0 and -90.0 <= self.north <= 90.0):
            raise ValueError(f"latitude bounds out of range: south={self.south} north={self.north}")
        if not (-180.0 <= self.west <= 180.0 and -180.0 <= self.east <= 180.0):
            raise ValueError(f"longitude bounds out of range: west={self.west} east={self.east}")
        if self.south > self.north:
            raise ValueError(f"south ({self.south}) must not exceed north ({self.north})")

    def to_overpass(self) -> str:
        return f"{self.south},{self.west},{self.north},{self.east}"

    def to_dict(self) -> Dict[str, float]:
        return {"south": self.south, "west": self.west, "north": self.north, "east": self.east}


@dataclass(slots=True)
class RawRecord:
    """Provider record after field-name resolution, before validation.

    Coordinates keep whatever the provider sent; the normalizer decides
    whether they are usable.
    """

    latitude: Any = None
    longitude: Any = None
    name: Optional[str] = None
    access: Optional[str] = None
    gender: Optional[str] = None
    wheelchair: Optional[str] = None
    operator: Optional[str] = None
    verified: bool = False
    source_ref: Optional[str] = None
    confidence_floor: Optional[float] = None
    extras: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True, slots=True)
class CanonicalRecord:
    """A validated facility in the unified schema."""

    id: str
    latitude: float
    longitude: float
    source: Source
    last_updated: datetime
    name: Optional[str] = None
    access: str = "unknown"
    gender: str = "unknown"
    wheelchair_accessible: str = "unknown"
    operator: Optional[str] = None
    verified: bool = False
    confidence_score: float = 0.5


# Adapter entry point: (fetcher, bounds, city, settings, cancel_event) -> raw records.
AdapterFn = Callable[..., List[RawRecord]]


@dataclass(frozen=True)
class SourceConfig:
    """Registry entry describing one provider."""

    key: str
    source: Source
    trust_level: TrustLevel
    priority: int
    strategy: QueryStrategy
    adapter: Optional[AdapterFn] = field(default=None, repr=False, compare=False)
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class DedupDecision:
    kind: DecisionKind
    candidate: CanonicalRecord
    matched: Optional[CanonicalRecord] = None
    result: Optional[CanonicalRecord] = None
    distance_m: Optional[float] = None


@dataclass
class IngestionStats:
    """Counters for a single ingestion run."""

    total_processed: int = 0
    total_accepted: int = 0
    total_rejected: int = 0
    duplicates_removed: int = 0
    merged: int = 0
    persisted: int = 0
    updated: int = 0
    persist_failures: int = 0
    sources: Dict[str, int] = field(default_factory=dict)
    failed_sources: List[str] = field(default_factory=list)
    cancelled: bool = False
    above_threshold: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for logging/storage."""
        return {
            "total_processed": self.total_processed,
            "total_accepted": self.total_accepted,
            "total_rejected": self.total_rejected,
            "duplicates_removed": self.duplicates_removed,
            "merged": self.merged,
            "persisted": self.persisted,
            "updated": self.updated,
            "persist_failures": self.persist_failures,
            "sources": dict(self.sources),
            "failed_sources": list(self.failed_sources),
            "cancelled": self.cancelled,
            "above_threshold": self.above_threshold,
        }

    def success_metrics(self) -> Dict[str, float]:
        precision = (self.total_accepted / self.total_processed * 100) if self.total_processed else 0.0
        duplicate_rate = (self.duplicates_removed / self.total_processed * 100) if self.total_processed else 0.0
        return {
            "precision_rate": round(precision, 2),
            "duplicate_rate": round(duplicate_rate, 2),
            "total_accepted": float(self.total_accepted),
            "above_confidence_threshold": float(self.above_threshold),
        }
