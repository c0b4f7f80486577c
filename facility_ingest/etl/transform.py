"""Normalisation of raw provider records into canonical facilities and inventory rows."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from facility_ingest.core.errors import ValidationError
from facility_ingest.models import CanonicalRecord, IngestionStats, RawRecord, Source, SourceConfig, TrustLevel
from facility_ingest.vendors.fields import to_float

logger = logging.getLogger(__name__)

COORDINATE_PRECISION = 6
SCORE_PRECISION = 4
FACILITY_TYPE = "public"

TRUST_BASE_SCORES = {
    TrustLevel.HIGH.value: 0.8,
    TrustLevel.MEDIUM.value: 0.6,
    TrustLevel.LOW.value: 0.4,
}
UNKNOWN_TRUST_SCORE = 0.5
WHEELCHAIR_BONUS = 0.1
OPERATOR_BONUS = 0.1
NAME_BONUS = 0.05
MISSING_NAME_PENALTY = 0.1
UNKNOWN_ACCESS_PENALTY = 0.05

_ACCESS_TOKENS = {
    "public": "public",
    "yes": "public",
    "permissive": "public",
    "open": "public",
    "free": "public",
    "customers": "customers",
    "customer": "customers",
    "customers_only": "customers",
    "private": "private",
    "no": "private",
    "restricted": "private",
    "unknown": "unknown",
}
_GENDER_TOKENS = {
    "male": "male",
    "men": "male",
    "gents": "male",
    "m": "male",
    "female": "female",
    "women": "female",
    "ladies": "female",
    "f": "female",
    "unisex": "unisex",
    "both": "unisex",
    "mixed": "unisex",
    "all": "unisex",
    "male;female": "unisex",
    "unknown": "unknown",
}
_WHEELCHAIR_TOKENS = {
    "yes": "yes",
    "true": "yes",
    "1": "yes",
    "designated": "yes",
    "no": "no",
    "false": "no",
    "0": "no",
    "unknown": "unknown",
}


def _token(value: Any) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip().lower()
    return token or None


def map_access(value: Any) -> str:
    return _ACCESS_TOKENS.get(_token(value) or "", "unknown")


def map_gender(value: Any) -> str:
    return _GENDER_TOKENS.get(_token(value) or "", "unknown")


def map_wheelchair(value: Any) -> str:
    return _WHEELCHAIR_TOKENS.get(_token(value) or "", "unknown")


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def round_coordinate(value: float) -> float:
    return round(value, COORDINATE_PRECISION)


def validate_coordinates(latitude: Any, longitude: Any) -> Tuple[float, float]:
    """Return rounded (lat, lon) or raise ValidationError."""
    lat = to_float(latitude)
    lon = to_float(longitude)
    if lat is None or lon is None:
        raise ValidationError(f"missing or non-numeric coordinates: lat={latitude!r} lon={longitude!r}")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"latitude out of range: {lat}")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"longitude out of range: {lon}")
    return round_coordinate(lat), round_coordinate(lon)


def confidence_score(
    trust_level: Any,
    *,
    name: Optional[str],
    operator: Optional[str],
    wheelchair_accessible: str,
    raw_access: Any = None,
    floor: Optional[float] = None,
) -> float:
    """Score how complete and trustworthy a record is, in [0, 1].

    The access penalty applies only when the provider explicitly reported
    ``unknown``; a missing access field is not penalised.
    """
    level = trust_level.value if isinstance(trust_level, TrustLevel) else _token(trust_level)
    score = TRUST_BASE_SCORES.get(level or "", UNKNOWN_TRUST_SCORE)

    if wheelchair_accessible == "yes":
        score += WHEELCHAIR_BONUS
    if operator:
        score += OPERATOR_BONUS
    if name:
        score += NAME_BONUS
    else:
        score -= MISSING_NAME_PENALTY
    if _token(raw_access) == "unknown":
        score -= UNKNOWN_ACCESS_PENALTY

    if floor is not None:
        score = max(score, floor)
    score = min(1.0, max(0.0, score))
    return round(score, SCORE_PRECISION)


def _build_record(raw: RawRecord, config: SourceConfig, now: datetime) -> CanonicalRecord:
    latitude, longitude = validate_coordinates(raw.latitude, raw.longitude)
    name = clean_text(raw.name)
    operator = clean_text(raw.operator)
    wheelchair = map_wheelchair(raw.wheelchair)

    return CanonicalRecord(
        id=clean_text(raw.source_ref) or str(uuid.uuid4()),
        latitude=latitude,
        longitude=longitude,
        source=config.source,
        last_updated=now,
        name=name,
        access=map_access(raw.access),
        gender=map_gender(raw.gender),
        wheelchair_accessible=wheelchair,
        operator=operator,
        verified=bool(raw.verified),
        confidence_score=confidence_score(
            config.trust_level,
            name=name,
            operator=operator,
            wheelchair_accessible=wheelchair,
            raw_access=raw.access,
            floor=raw.confidence_floor,
        ),
    )


def normalize(raw: RawRecord, config: SourceConfig, now: Optional[datetime] = None) -> Optional[CanonicalRecord]:
    """Convert ``raw`` to a canonical record, or return None when it is unusable."""
    try:
        return _build_record(raw, config, now or datetime.now(timezone.utc))
    except ValidationError as exc:
        logger.debug("Rejected %s record %s: %s", config.key, raw.source_ref, exc)
        return None


def normalize_batch(
    raws: Iterable[RawRecord],
    config: SourceConfig,
    stats: Optional[IngestionStats] = None,
) -> List[CanonicalRecord]:
    now = datetime.now(timezone.utc)
    records: List[CanonicalRecord] = []
    rejected = 0
    for raw in raws:
        record = normalize(raw, config, now)
        if record is None:
            rejected += 1
            continue
        records.append(record)

    if stats is not None:
        stats.total_rejected += rejected
    if rejected:
        logger.info("%s: %d records rejected during normalisation", config.key, rejected)
    return records


def derive_facilities(record: CanonicalRecord) -> List[str]:
    facilities = []
    if record.wheelchair_accessible == "yes":
        facilities.append("handicap")
    if record.gender == "unisex":
        facilities.append("unisex")
    if record.access == "public":
        facilities.append("public_access")
    return facilities


def to_inventory_row(record: CanonicalRecord) -> Dict[str, Any]:
    """Shape a canonical record as the inventory row the gateway stores."""
    return {
        "id": record.id,
        "name": record.name,
        "location": f"{record.latitude},{record.longitude}",
        "coordinates": {"latitude": record.latitude, "longitude": record.longitude},
        "facilities": derive_facilities(record),
        "type": FACILITY_TYPE,
        "source": record.source.value,
        "verified": record.verified,
        "metadata": {
            "confidence_score": record.confidence_score,
            "access": record.access,
            "gender": record.gender,
            "wheelchair_accessible": record.wheelchair_accessible,
            "operator": record.operator,
        },
        "last_updated": record.last_updated,
    }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable last_updated %r; using now", value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def from_inventory_row(row: Dict[str, Any]) -> CanonicalRecord:
    """Read an inventory row back into a canonical record; raises ValidationError on bad coordinates."""
    coordinates = row.get("coordinates") or {}
    latitude, longitude = validate_coordinates(
        coordinates.get("latitude", row.get("latitude")),
        coordinates.get("longitude", row.get("longitude")),
    )
    metadata = row.get("metadata") or {}
    score = to_float(metadata.get("confidence_score"))

    return CanonicalRecord(
        id=str(row["id"]),
        latitude=latitude,
        longitude=longitude,
        source=Source.parse(row.get("source")),
        last_updated=_parse_timestamp(row.get("last_updated")),
        name=clean_text(row.get("name")),
        access=map_access(metadata.get("access")),
        gender=map_gender(metadata.get("gender")),
        wheelchair_accessible=map_wheelchair(metadata.get("wheelchair_accessible")),
        operator=clean_text(metadata.get("operator")),
        verified=bool(row.get("verified")),
        confidence_score=min(1.0, max(0.0, score)) if score is not None else UNKNOWN_TRUST_SCORE,
    )
