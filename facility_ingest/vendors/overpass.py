"""OpenStreetMap adapters backed by the Overpass API."""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from facility_ingest.core.config import Settings
from facility_ingest.core.errors import SourceUnavailableError
from facility_ingest.core.fetcher import RateLimitedFetcher
from facility_ingest.models import BoundingBox, RawRecord
from facility_ingest.vendors.fields import extract_coordinates, probe_field, strip_or_none, wheelchair_token

logger = logging.getLogger(__name__)

OVERPASS_TIMEOUT_SECONDS = 25

# Per-city windows for the extended Planet OSM query.
CITY_BOUNDS: Dict[str, BoundingBox] = {
    "mumbai": BoundingBox(18.8, 72.7, 19.3, 73.0),
    "delhi": BoundingBox(28.4, 76.8, 28.9, 77.4),
    "bangalore": BoundingBox(12.7, 77.3, 13.2, 77.9),
    "chennai": BoundingBox(12.9, 80.1, 13.3, 80.4),
    "pune": BoundingBox(18.3, 73.7, 18.7, 74.0),
    "kolkata": BoundingBox(22.4, 88.2, 22.8, 88.5),
    "ahmedabad": BoundingBox(22.9, 72.4, 23.2, 72.8),
    "jaipur": BoundingBox(26.7, 75.6, 27.1, 76.0),
}


def build_toilets_query(bounds: BoundingBox) -> str:
    bbox = bounds.to_overpass()
    return (
        f"[out:json][timeout:{OVERPASS_TIMEOUT_SECONDS}];\n"
        "(\n"
        f'  node["amenity"="toilets"]({bbox});\n'
        f'  way["amenity"="toilets"]({bbox});\n'
        f'  relation["amenity"="toilets"]({bbox});\n'
        ");\n"
        "out center;\n"
    )


def build_planet_query(bounds: BoundingBox) -> str:
    """Broader query: toilets plus public buildings and stations that advertise toilets."""
    bbox = bounds.to_overpass()
    return (
        f"[out:json][timeout:{OVERPASS_TIMEOUT_SECONDS}][maxsize:104857600];\n"
        "(\n"
        f'  node["amenity"="toilets"]({bbox});\n'
        f'  way["amenity"="toilets"]({bbox});\n'
        f'  relation["amenity"="toilets"]({bbox});\n'
        f'  node["amenity"~"^(public_building|community_centre|townhall)$"]["toilets"!="no"]({bbox});\n'
        f'  way["amenity"~"^(public_building|community_centre|townhall)$"]["toilets"!="no"]({bbox});\n'
        f'  node["railway"~"^(station|halt)$"]["toilets"!="no"]({bbox});\n'
        f'  way["railway"~"^(station|halt)$"]["toilets"!="no"]({bbox});\n'
        ");\n"
        "out center;\n"
    )


def map_osm_access(tags: Mapping[str, Any]) -> str:
    access = str(tags.get("access") or "").strip().lower()
    if access in {"public", "yes", "permissive"}:
        return "public"
    if access in {"private", "no"}:
        return "private"
    if access == "customers":
        return "customers"
    opening_hours = tags.get("opening_hours")
    if opening_hours and opening_hours != "24/7":
        return "customers"
    return "unknown"


def map_osm_gender(tags: Mapping[str, Any]) -> Optional[str]:
    if str(tags.get("unisex", "")).lower() == "yes":
        return "unisex"
    male = str(tags.get("male", "")).lower() == "yes"
    female = str(tags.get("female", "")).lower() == "yes"
    if male and female:
        return "unisex"
    if male:
        return "male"
    if female:
        return "female"
    return None


def element_to_raw(element: Mapping[str, Any]) -> RawRecord:
    tags = element["tags"]
    if element.get("type") == "node":
        latitude, longitude = element.get("lat"), element.get("lon")
    else:
        latitude, longitude = extract_coordinates(element.get("center") or {})

    return RawRecord(
        latitude=latitude,
        longitude=longitude,
        name=strip_or_none(tags.get("name")),
        access=map_osm_access(tags),
        gender=map_osm_gender(tags),
        wheelchair=wheelchair_token(tags.get("wheelchair")),
        operator=strip_or_none(probe_field(tags, ("operator", "brand"))),
        source_ref=f"osm/{element.get('type')}/{element.get('id')}",
        extras={
            "osm_id": element.get("id"),
            "fee": tags.get("fee"),
            "opening_hours": tags.get("opening_hours"),
            "amenity": tags.get("amenity"),
        },
    )


def parse_overpass(payload: Any) -> List[RawRecord]:
    """Convert an Overpass JSON response into raw records, skipping malformed elements."""
    if not isinstance(payload, Mapping):
        raise ValueError(f"Overpass payload must be an object, got {type(payload).__name__}")

    elements = payload.get("elements")
    if not isinstance(elements, list):
        logger.warning("Overpass response missing elements list. keys=%s", list(payload.keys())[:10])
        return []

    records: List[RawRecord] = []
    for element in elements:
        # Skeleton geometry nodes carry no tags and are not facilities.
        if not isinstance(element, Mapping) or not isinstance(element.get("tags"), Mapping):
            continue
        try:
            records.append(element_to_raw(element))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping malformed Overpass element %s: %s", element.get("id"), exc)
    return records


def _run_query(
    fetcher: RateLimitedFetcher,
    url: str,
    query: str,
    source_key: str,
    cancel_event: Optional[threading.Event],
) -> List[RawRecord]:
    payload = fetcher.fetch(
        url,
        method="POST",
        data={"data": query},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        cancel_event=cancel_event,
    )
    try:
        records = parse_overpass(payload)
    except ValueError as exc:
        raise SourceUnavailableError(f"{source_key} returned an unparseable payload: {exc}", source=source_key) from exc

    logger.info("%s: %d raw records parsed", source_key, len(records))
    return records


def fetch_osm_overpass(
    fetcher: RateLimitedFetcher,
    bounds: BoundingBox,
    city: str,
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
) -> List[RawRecord]:
    logger.info("Starting OSM Overpass ingestion for %s bounds=%s", city, bounds.to_overpass())
    return _run_query(fetcher, settings.overpass_url, build_toilets_query(bounds), "osm_overpass", cancel_event)


def fetch_planet_osm(
    fetcher: RateLimitedFetcher,
    bounds: BoundingBox,
    city: str,
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
) -> List[RawRecord]:
    city_bounds = CITY_BOUNDS.get((city or "").strip().lower())
    if city_bounds is None:
        logger.warning("planet_osm has no bounds for city=%s; skipping", city)
        return []
    logger.info("Starting Planet OSM ingestion for %s", city)
    return _run_query(fetcher, settings.overpass_url, build_planet_query(city_bounds), "planet_osm", cancel_event)
