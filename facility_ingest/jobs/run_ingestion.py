"""Ingestion job: fetch every source, normalise, deduplicate and persist."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from facility_ingest.core.config import Settings, get_settings
from facility_ingest.core.db import InventoryGateway, PostgisInventoryGateway
from facility_ingest.core.errors import (
    FetchCancelledError,
    PersistenceError,
    PersistenceUnavailableError,
    SourceUnavailableError,
    ValidationError,
)
from facility_ingest.core.fetcher import RateLimitedFetcher
from facility_ingest.core.sources import load_sources
from facility_ingest.etl.dedupe import DedupResult, dedupe
from facility_ingest.etl.transform import from_inventory_row, normalize_batch, to_inventory_row
from facility_ingest.models import BoundingBox, CanonicalRecord, IngestionStats, RawRecord, SourceConfig
from facility_ingest.vendors.overpass import CITY_BOUNDS

logger = logging.getLogger(__name__)


class IngestionOrchestrator:
    """Drives one or more ingestion runs against a single inventory gateway."""

    def __init__(
        self,
        gateway: InventoryGateway,
        *,
        settings: Optional[Settings] = None,
        fetcher: Optional[RateLimitedFetcher] = None,
        sources: Optional[List[SourceConfig]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or RateLimitedFetcher.from_settings(self.settings)
        self.sources = load_sources(self.settings, sources)

    def _fetch_source(
        self,
        source: SourceConfig,
        bounds: BoundingBox,
        city: str,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[List[RawRecord], bool]:
        """Run one adapter; returns (raw records, failed)."""
        try:
            records = source.adapter(self.fetcher, bounds, city, self.settings, cancel_event)
        except FetchCancelledError:
            logger.warning("Source %s cancelled", source.key)
            return [], False
        except SourceUnavailableError as exc:
            logger.error("Source %s unavailable: %s", source.key, exc)
            return [], True
        except Exception as exc:  # noqa: BLE001
            logger.exception("Source %s failed unexpectedly: %s", source.key, exc)
            return [], True
        return records, False

    def collect(
        self,
        bounds: BoundingBox,
        city: str,
        stats: IngestionStats,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[CanonicalRecord]:
        """Fetch all sources concurrently and normalise them into one batch in registry order."""
        if not self.sources:
            logger.warning("No sources enabled; nothing to ingest")
            return []

        workers = max(1, min(self.settings.fetch_workers, len(self.sources)))
        batch: List[CanonicalRecord] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest-source") as executor:
            futures = [
                (source, executor.submit(self._fetch_source, source, bounds, city, cancel_event))
                for source in self.sources
            ]
            for source, future in futures:
                raws, failed = future.result()
                records = normalize_batch(raws, source, stats)
                stats.sources[source.key] = len(records)
                if failed:
                    stats.failed_sources.append(source.key)
                logger.info("Source %s: %d raw, %d canonical", source.key, len(raws), len(records))
                batch.extend(records)

        stats.total_processed = len(batch)
        return batch

    def _load_inventory(self) -> List[CanonicalRecord]:
        existing: List[CanonicalRecord] = []
        for row in self.gateway.find_all():
            try:
                existing.append(from_inventory_row(row))
            except (KeyError, ValidationError) as exc:
                logger.warning("Ignoring unusable inventory row %s: %s", row.get("id"), exc)
        return existing

    def _persist(self, result: DedupResult, stats: IngestionStats) -> None:
        threshold = self.settings.confidence_threshold
        writes = [(record, True) for record in result.updates] + [(record, False) for record in result.inserts]
        for record, is_update in writes:
            try:
                self.gateway.save(to_inventory_row(record))
            except PersistenceUnavailableError:
                raise
            except PersistenceError as exc:
                stats.persist_failures += 1
                logger.error("Failed to persist %s: %s", record.id, exc)
                continue

            if is_update:
                stats.updated += 1
            else:
                stats.persisted += 1
            if record.confidence_score >= threshold:
                stats.above_threshold += 1

    def run_ingestion(
        self,
        bounds: BoundingBox,
        city: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionStats:
        """Run a full ingestion; only an unreachable inventory store raises."""
        stats = IngestionStats()
        started = time.monotonic()
        logger.info(
            "Starting ingestion for %s bounds=%s sources=%s",
            city,
            bounds.to_overpass(),
            [source.key for source in self.sources],
        )

        batch = self.collect(bounds, city, stats, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            stats.cancelled = True
            logger.warning("Ingestion for %s cancelled after collecting %d records; nothing persisted", city, len(batch))
            return stats

        with self.gateway.write_lock():
            existing = self._load_inventory()
            result = dedupe(batch, existing, self.settings.dedup_radius_m, stats)
            self._persist(result, stats)

        logger.info(
            "Completed ingestion for %s in %.1fs: %s metrics=%s",
            city,
            time.monotonic() - started,
            stats.to_dict(),
            stats.success_metrics(),
        )
        return stats

    def close(self) -> None:
        if self._owns_fetcher:
            self.fetcher.close()


def run_ingestion(
    city: str,
    bounds: Optional[BoundingBox] = None,
    *,
    gateway: Optional[InventoryGateway] = None,
    settings: Optional[Settings] = None,
    fetcher: Optional[RateLimitedFetcher] = None,
    cancel_event: Optional[threading.Event] = None,
) -> IngestionStats:
    """Convenience entry point for schedulers; bounds default to the city's known window."""
    settings = settings or get_settings()
    if bounds is None:
        bounds = CITY_BOUNDS.get(city.strip().lower())
        if bounds is None:
            raise ValueError(f"No default bounds for city {city!r}; pass bounds explicitly")

    if gateway is None:
        postgis = PostgisInventoryGateway(settings.database_url)
        postgis.ensure_schema()
        gateway = postgis

    orchestrator = IngestionOrchestrator(
        gateway,
        settings=settings,
        fetcher=fetcher,
    )
    try:
        return orchestrator.run_ingestion(bounds, city, cancel_event)
    finally:
        orchestrator.close()
