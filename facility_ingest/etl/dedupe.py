"""Proximity based deduplication of canonical facilities."""

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from facility_ingest.models import CanonicalRecord, DecisionKind, DedupDecision, IngestionStats, Source

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_RADIUS_M = 15.0
# Slightly under the true metres per degree of latitude so bands never undershoot.
_METERS_PER_DEGREE_LAT = 111_000.0

SOURCE_PRIORITY: Dict[Source, int] = {
    Source.USER: 5,
    Source.GOVERNMENT: 4,
    Source.OSM: 3,
    Source.PLANET_OSM: 3,
    Source.MANUAL: 2,
}
DEFAULT_PRIORITY = 1

_IGNORED_FIELDS = {"id", "last_updated"}


def source_priority(source: Any) -> int:
    return SOURCE_PRIORITY.get(Source.parse(source), DEFAULT_PRIORITY)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def distance_between(first: CanonicalRecord, second: CanonicalRecord) -> float:
    return haversine_m(first.latitude, first.longitude, second.latitude, second.longitude)


def merge(primary: CanonicalRecord, secondary: CanonicalRecord) -> CanonicalRecord:
    """Return a new record: ``primary`` with gaps filled from ``secondary``."""
    return replace(
        primary,
        name=primary.name or secondary.name,
        operator=primary.operator or secondary.operator,
        confidence_score=max(primary.confidence_score, secondary.confidence_score),
        verified=primary.verified or secondary.verified,
    )


def evaluate(candidate: CanonicalRecord, matched: CanonicalRecord, distance_m: float) -> DedupDecision:
    """Decide between merging into ``matched`` or rejecting ``candidate``."""
    if source_priority(candidate.source) >= source_priority(matched.source):
        result = replace(merge(candidate, matched), id=matched.id)
        return DedupDecision(DecisionKind.MERGE, candidate, matched, result, distance_m)
    return DedupDecision(DecisionKind.REJECT, candidate, matched, None, distance_m)


def same_content(first: CanonicalRecord, second: CanonicalRecord) -> bool:
    return all(
        getattr(first, item.name) == getattr(second, item.name)
        for item in fields(CanonicalRecord)
        if item.name not in _IGNORED_FIELDS
    )


@dataclass
class _Slot:
    ordinal: int
    record: CanonicalRecord
    original: Optional[CanonicalRecord] = None

    @property
    def from_inventory(self) -> bool:
        return self.original is not None


class _WorkingSet:
    """Records a candidate is compared against, in comparison order.

    With ``indexed`` set, slots are bucketed into latitude bands as wide as
    the radius so only neighbouring bands are scanned; results are still
    returned in ordinal order.
    """

    def __init__(self, radius_m: float, indexed: bool) -> None:
        self.slots: List[_Slot] = []
        self._indexed = indexed and radius_m > 0
        self._band_deg = radius_m / _METERS_PER_DEGREE_LAT if self._indexed else 0.0
        self._bands: Dict[int, List[_Slot]] = {}

    def _band(self, latitude: float) -> int:
        return math.floor(latitude / self._band_deg)

    def add(self, record: CanonicalRecord, original: Optional[CanonicalRecord] = None) -> None:
        slot = _Slot(len(self.slots), record, original)
        self.slots.append(slot)
        if self._indexed:
            self._bands.setdefault(self._band(record.latitude), []).append(slot)

    def replace(self, slot: _Slot, record: CanonicalRecord) -> None:
        if self._indexed:
            self._bands[self._band(slot.record.latitude)].remove(slot)
            self._bands.setdefault(self._band(record.latitude), []).append(slot)
        slot.record = record

    def candidates(self, record: CanonicalRecord) -> Sequence[_Slot]:
        if not self._indexed:
            return self.slots
        band = self._band(record.latitude)
        nearby = [slot for offset in (-1, 0, 1) for slot in self._bands.get(band + offset, ())]
        nearby.sort(key=lambda slot: slot.ordinal)
        return nearby

    def first_match(self, record: CanonicalRecord, radius_m: float) -> Optional[Tuple[_Slot, float]]:
        for slot in self.candidates(record):
            distance = distance_between(record, slot.record)
            if distance <= radius_m:
                return slot, distance
        return None


@dataclass
class DedupResult:
    inserts: List[CanonicalRecord] = field(default_factory=list)
    updates: List[CanonicalRecord] = field(default_factory=list)
    decisions: List[DedupDecision] = field(default_factory=list)

    @property
    def records(self) -> List[CanonicalRecord]:
        """Everything that has to be written: superseded inventory rows first, then new records."""
        return self.updates + self.inserts


def dedupe(
    batch: Iterable[CanonicalRecord],
    existing: Iterable[CanonicalRecord],
    radius_m: float = DEFAULT_RADIUS_M,
    stats: Optional[IngestionStats] = None,
    *,
    indexed: bool = True,
) -> DedupResult:
    """Deduplicate ``batch`` against ``existing`` inventory and against itself.

    Candidates are processed in input order and decided at the first record
    within ``radius_m``: existing inventory first, then previously accepted
    candidates. A candidate whose source priority is at least the matched
    record's is merged into it, otherwise it is rejected.
    """
    working = _WorkingSet(radius_m, indexed)
    for record in existing:
        working.add(record, original=record)

    result = DedupResult()
    for candidate in batch:
        match = working.first_match(candidate, radius_m)
        if match is None:
            working.add(candidate)
            if stats is not None:
                stats.total_accepted += 1
            result.decisions.append(DedupDecision(DecisionKind.KEEP_BOTH, candidate, result=candidate))
            continue

        slot, distance = match
        decision = evaluate(candidate, slot.record, distance)
        result.decisions.append(decision)
        if stats is not None:
            stats.duplicates_removed += 1
        if decision.kind is DecisionKind.MERGE:
            working.replace(slot, decision.result)
            if stats is not None:
                stats.merged += 1
            logger.debug(
                "Merged %s (%s) into %s (%s) at %.2fm",
                candidate.id,
                candidate.source.value,
                slot.record.id,
                decision.matched.source.value,
                distance,
            )
        else:
            logger.debug(
                "Rejected %s (%s): lower priority than %s (%s) at %.2fm",
                candidate.id,
                candidate.source.value,
                slot.record.id,
                slot.record.source.value,
                distance,
            )

    for slot in working.slots:
        if not slot.from_inventory:
            result.inserts.append(slot.record)
        elif not same_content(slot.record, slot.original):
            result.updates.append(slot.record)

    logger.info(
        "Dedupe finished: %d new, %d inventory updates, %d decisions",
        len(result.inserts),
        len(result.updates),
        len(result.decisions),
    )
    return result
