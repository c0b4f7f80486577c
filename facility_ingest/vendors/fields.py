"""Field lookup helpers for provider payloads with inconsistent naming.

Only adapters use these; everything past the adapter boundary works on
RawRecord attributes instead of raw dictionaries.
"""

import logging
import math
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from facility_ingest.models import RawRecord

logger = logging.getLogger(__name__)

LATITUDE_FIELDS = ("lat", "latitude", "y")
LONGITUDE_FIELDS = ("lon", "lng", "longitude", "long", "x")
NAME_FIELDS = (
    "name",
    "toilet_name",
    "facility_name",
    "title",
    "location_name",
    "place_name",
    "establishment_name",
)
OPERATOR_FIELDS = ("operator", "maintained_by", "managed_by", "agency")
ACCESS_FIELDS = ("access", "access_type")
GENDER_FIELDS = ("gender", "toilet_type")
WHEELCHAIR_FIELDS = ("wheelchair", "wheelchair_accessible", "handicap", "handicap_accessible", "disabled_access", "accessible")
ID_FIELDS = ("id", "_id", "document_id", "sourceId", "source_id")
NESTED_LOCATION_FIELDS = ("location", "coordinates", "geo", "point", "geometry", "center")

_TRUE_TOKENS = {"yes", "true", "1", "y"}
_FALSE_TOKENS = {"no", "false", "0", "n"}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def probe_field(data: Any, candidates: Sequence[str], default: Any = None) -> Any:
    """Return the first non-blank value among ``candidates``.

    Each candidate is tried as an exact key first, then case-insensitively,
    before moving on to the next candidate.
    """
    if not isinstance(data, Mapping):
        return default

    lowered: Optional[Dict[str, Any]] = None
    for candidate in candidates:
        value = data.get(candidate)
        if not _is_blank(value):
            return value
        if lowered is None:
            lowered = {}
            for key, item in data.items():
                if isinstance(key, str):
                    lowered.setdefault(key.lower(), item)
        value = lowered.get(candidate.lower())
        if not _is_blank(value):
            return value
    return default


def to_float(value: Any) -> Optional[float]:
    """Parse a coordinate-like value; None when missing or not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _first_number(data: Mapping, candidates: Iterable[str]) -> Any:
    for candidate in candidates:
        value = probe_field(data, (candidate,))
        if to_float(value) is not None:
            return value
    return None


def extract_coordinates(data: Any) -> Tuple[Any, Any]:
    """Find latitude/longitude values, looking into nested location objects.

    Values are returned as found so the normalizer can apply its own checks;
    (None, None) means nothing usable was located.
    """
    if not isinstance(data, Mapping):
        return None, None

    latitude = _first_number(data, LATITUDE_FIELDS)
    longitude = _first_number(data, LONGITUDE_FIELDS)
    if latitude is not None and longitude is not None:
        return latitude, longitude

    for key in NESTED_LOCATION_FIELDS:
        nested = probe_field(data, (key,))
        if isinstance(nested, Mapping):
            geo_coords = nested.get("coordinates")
            if nested.get("type") == "Point" and isinstance(geo_coords, (list, tuple)) and len(geo_coords) >= 2:
                # GeoJSON points are [longitude, latitude].
                return geo_coords[1], geo_coords[0]
            nested_lat = _first_number(nested, LATITUDE_FIELDS)
            nested_lng = _first_number(nested, LONGITUDE_FIELDS)
            if latitude is None:
                latitude = nested_lat
            if longitude is None:
                longitude = nested_lng
        if latitude is not None and longitude is not None:
            break

    return latitude, longitude


def strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def flag(value: Any) -> Optional[bool]:
    """Interpret yes/no style provider flags; None when unknown."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    return None


def wheelchair_token(value: Any) -> Optional[str]:
    """Map wheelchair style fields to yes/no tokens, passing other strings through."""
    parsed = flag(value)
    if parsed is True:
        return "yes"
    if parsed is False:
        return "no"
    return strip_or_none(value)


def raw_from_mapping(record: Mapping[str, Any], namespace: Optional[str] = None) -> RawRecord:
    """Build a RawRecord from a flat provider object with arbitrary field names.

    Provider row ids are only unique within one feed, so callers pass a
    ``namespace`` (source plus resource or city) that prefixes ``source_ref``.
    """
    ref = strip_or_none(probe_field(record, ID_FIELDS))
    if ref is not None and namespace:
        ref = f"{namespace}/{ref}"
    latitude, longitude = extract_coordinates(record)
    verified = flag(probe_field(record, ("verified", "is_verified")))
    return RawRecord(
        latitude=latitude,
        longitude=longitude,
        name=strip_or_none(probe_field(record, NAME_FIELDS)),
        access=strip_or_none(probe_field(record, ACCESS_FIELDS)),
        gender=strip_or_none(probe_field(record, GENDER_FIELDS)),
        wheelchair=wheelchair_token(probe_field(record, WHEELCHAIR_FIELDS)),
        operator=strip_or_none(probe_field(record, OPERATOR_FIELDS)),
        verified=bool(verified),
        source_ref=ref,
    )
