"""Registry of external providers, in priority order."""

import logging
from typing import List, Optional

from facility_ingest.core.config import Settings
from facility_ingest.models import QueryStrategy, Source, SourceConfig, TrustLevel
from facility_ingest.vendors.data_gov_in import fetch_government_datasets
from facility_ingest.vendors.overpass import fetch_osm_overpass, fetch_planet_osm
from facility_ingest.vendors.regional import fetch_regional
from facility_ingest.vendors.seeds import fetch_verified_locations

logger = logging.getLogger(__name__)


def default_sources() -> List[SourceConfig]:
    return [
        SourceConfig("osm_overpass", Source.OSM, TrustLevel.MEDIUM, 1, QueryStrategy.BOUNDS, fetch_osm_overpass),
        SourceConfig("planet_osm", Source.PLANET_OSM, TrustLevel.MEDIUM, 2, QueryStrategy.BOUNDS, fetch_planet_osm),
        SourceConfig(
            "government_datasets", Source.GOVERNMENT, TrustLevel.HIGH, 3, QueryStrategy.BOUNDS, fetch_government_datasets
        ),
        SourceConfig("regional", Source.REGIONAL, TrustLevel.LOW, 4, QueryStrategy.BOUNDS, fetch_regional),
        SourceConfig(
            "verified_locations", Source.MANUAL, TrustLevel.HIGH, 5, QueryStrategy.STATIC_SEED, fetch_verified_locations
        ),
    ]


def load_sources(settings: Settings, sources: Optional[List[SourceConfig]] = None) -> List[SourceConfig]:
    """Return the enabled sources sorted by declared priority, honouring INGEST_DISABLED_SOURCES."""
    configured = sources if sources is not None else default_sources()
    disabled = set(settings.disabled_sources)
    unknown = disabled - {source.key for source in configured}
    if unknown:
        logger.warning("INGEST_DISABLED_SOURCES names unknown sources: %s", ", ".join(sorted(unknown)))

    enabled = []
    for source in sorted(configured, key=lambda item: item.priority):
        if not source.enabled or source.key in disabled:
            logger.info("Source %s disabled", source.key)
            continue
        if source.adapter is None:
            logger.warning("Source %s has no adapter; skipping", source.key)
            continue
        enabled.append(source)
    return enabled
