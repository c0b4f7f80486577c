"""Curated, manually verified facilities at transport hubs, malls and campuses."""

import logging
import threading
from typing import Dict, List, NamedTuple, Optional

from facility_ingest.core.config import Settings
from facility_ingest.core.fetcher import RateLimitedFetcher
from facility_ingest.models import BoundingBox, RawRecord

logger = logging.getLogger(__name__)

VERIFIED_CONFIDENCE_FLOOR = 0.9


class Seed(NamedTuple):
    ref: str
    name: str
    latitude: float
    longitude: float
    operator: Optional[str]
    category: str


VERIFIED_SEEDS: Dict[str, List[Seed]] = {
    "mumbai": [
        Seed("mumbai_central_railway", "Mumbai Central Railway Station Toilets", 18.9700, 72.8200, "Indian Railways", "railway_station"),
        Seed("cst_mumbai", "Chhatrapati Shivaji Terminus Toilets", 18.9398, 72.8354, "Indian Railways", "railway_station"),
        Seed("csmia_mumbai", "Chhatrapati Shivaji Maharaj International Airport", 19.0896, 72.8656, None, "airport"),
        Seed("phoenix_mall_mumbai", "Phoenix Mall Public Toilets", 18.9944, 72.8259, "Phoenix Mills", "shopping_mall"),
        Seed("inorbit_mall_mumbai", "Inorbit Mall Public Facilities", 19.1774, 72.8376, None, "shopping_mall"),
        Seed("iit_bombay", "IIT Bombay Campus Public Toilets", 19.1334, 72.9133, "IIT Bombay", "campus"),
    ],
    "delhi": [
        Seed("ndls_delhi", "New Delhi Railway Station Toilets", 28.6425, 77.2197, "Indian Railways", "railway_station"),
        Seed("igia_delhi", "Indira Gandhi International Airport", 28.5562, 77.1000, None, "airport"),
        Seed("citywalk_delhi", "Select Citywalk Mall Public Toilets", 28.5275, 77.2197, None, "shopping_mall"),
    ],
    "pune": [
        Seed("pune_railway", "Pune Railway Station Toilets", 18.5289, 73.8744, "Indian Railways", "railway_station"),
        Seed("pune_central_mall", "Pune Central Mall Public Facilities", 18.5314, 73.8759, None, "shopping_mall"),
    ],
}


def seed_to_raw(seed: Seed) -> RawRecord:
    return RawRecord(
        latitude=seed.latitude,
        longitude=seed.longitude,
        name=seed.name,
        access="public",
        gender="unisex",
        wheelchair="yes",
        operator=seed.operator,
        verified=True,
        source_ref=seed.ref,
        confidence_floor=VERIFIED_CONFIDENCE_FLOOR,
        extras={"category": seed.category},
    )


def fetch_verified_locations(
    fetcher: RateLimitedFetcher,
    bounds: BoundingBox,
    city: str,
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
) -> List[RawRecord]:
    seeds = VERIFIED_SEEDS.get((city or "").strip().lower(), [])
    logger.info("verified_locations: %d seeds for %s", len(seeds), city)
    return [seed_to_raw(seed) for seed in seeds]
