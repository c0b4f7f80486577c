"""Municipal open-data endpoints for individual cities."""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

from facility_ingest.core.config import Settings
from facility_ingest.core.errors import FetchCancelledError, SourceUnavailableError
from facility_ingest.core.fetcher import RateLimitedFetcher
from facility_ingest.models import BoundingBox, RawRecord
from facility_ingest.vendors.fields import raw_from_mapping
from facility_ingest.vendors.overpass import element_to_raw

logger = logging.getLogger(__name__)

REGIONAL_TIMEOUT_SECONDS = 20.0
REGIONAL_MAX_RETRIES = 3

# city -> (primary, secondary)
REGIONAL_ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "mumbai": (
        "https://api.mygov.in/groups/mumbai/municipal-data/v1/toilets",
        "https://mmrdaplatform.org/api/mumbai/sanitation",
    ),
    "delhi": (
        "https://api.mygov.in/groups/delhi/ncd-data/v1/public-facilities",
        "https://corporation.gov.in/api/delhi/sanitation",
    ),
    "bangalore": (
        "https://api.mygov.in/groups/bangalore/bbmp-data/v1/public-toilets",
        "https://bbmp.gov.in/api/sanitation/facilities",
    ),
    "chennai": (
        "https://api.mygov.in/groups/chennai/corp-data/v1/sanitation",
        "https://chennaicorporation.gov.in/api/public-facilities",
    ),
    "pune": (
        "https://api.mygov.in/groups/pune/pmc-data/v1/toilets",
        "https://punecorporation.org/api/sanitation",
    ),
}

# Extra feature selectors each municipality indexes alongside plain toilets.
_CITY_SELECTORS: Dict[str, Tuple[str, ...]] = {
    "mumbai": ('node["railway"="station"]["toilets"!="no"]', 'way["railway"="station"]["toilets"!="no"]'),
    "delhi": (
        'node["amenity"~"^(public_building|hospital|school)$"]',
        'way["amenity"~"^(public_building|hospital|school)$"]',
    ),
    "bangalore": ('node["amenity"~"^(mall|community_centre)$"]', 'way["amenity"~"^(mall|community_centre)$"]'),
}

_LIST_KEYS = ("elements", "records", "facilities", "toilets", "data", "results")


def build_regional_query(city: str, bounds: BoundingBox) -> str:
    bbox = bounds.to_overpass()
    selectors = ['node["amenity"="toilets"]', 'way["amenity"="toilets"]']
    selectors.extend(_CITY_SELECTORS.get(city, _CITY_SELECTORS["mumbai"]))
    body = "".join(f"  {selector}({bbox});\n" for selector in selectors)
    return f"[out:json][timeout:30];\n(\n{body});\nout center;\n"


def _extract_items(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in _LIST_KEYS:
            items = payload.get(key)
            if isinstance(items, list):
                return items
    return None


def parse_regional(payload: Any, city: str) -> List[RawRecord]:
    """Parse either Overpass-style elements or flat facility objects."""
    items = _extract_items(payload)
    if items is None:
        raise ValueError("regional payload has no recognised facility list")

    records: List[RawRecord] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        try:
            if isinstance(item.get("tags"), Mapping):
                raw = element_to_raw(item)
            else:
                raw = raw_from_mapping(item, f"regional/{city}")
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping malformed regional record for %s: %s", city, exc)
            continue
        raw.extras["city"] = city
        records.append(raw)
    return records


def fetch_regional(
    fetcher: RateLimitedFetcher,
    bounds: BoundingBox,
    city: str,
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
) -> List[RawRecord]:
    city_key = (city or "").strip().lower()
    endpoints = REGIONAL_ENDPOINTS.get(city_key)
    if endpoints is None:
        logger.info("No regional endpoints configured for city=%s", city)
        return []

    query = build_regional_query(city_key, bounds)
    errors = []
    for url in endpoints:
        try:
            payload = fetcher.fetch(
                url,
                method="POST",
                json={"query": query, "city": city_key, "bounds": bounds.to_overpass()},
                max_retries=REGIONAL_MAX_RETRIES,
                timeout=REGIONAL_TIMEOUT_SECONDS,
                cancel_event=cancel_event,
            )
            records = parse_regional(payload, city_key)
        except FetchCancelledError:
            raise
        except (SourceUnavailableError, ValueError) as exc:
            logger.warning("Regional endpoint %s failed for %s: %s", url, city_key, exc)
            errors.append(str(exc))
            continue
        logger.info("regional: %d raw records from %s", len(records), url)
        return records

    raise SourceUnavailableError(f"all regional endpoints failed for {city_key}: {'; '.join(errors)}", source="regional")
