"""Client for the data.gov.in CKAN catalogue of government sanitation datasets."""

import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional

from facility_ingest.core.config import Settings
from facility_ingest.core.errors import FetchCancelledError, SourceUnavailableError
from facility_ingest.core.fetcher import RateLimitedFetcher
from facility_ingest.models import BoundingBox, RawRecord
from facility_ingest.vendors.fields import raw_from_mapping

logger = logging.getLogger(__name__)
_BASE_URL = "https://www.data.gov.in/api/3/action"
_SEARCH_ROWS = 50
_RECORD_LIMIT = 100
_KEYWORD = "toilet"


def _mentions_keyword(dataset: Mapping[str, Any]) -> bool:
    keywords = dataset.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [keywords]
    haystack = [dataset.get("title"), dataset.get("notes"), dataset.get("name"), *keywords]
    return any(_KEYWORD in str(value).lower() for value in haystack if value)


def select_datasets(payload: Any) -> List[Dict[str, Any]]:
    """Return the toilet-related datasets of a ``package_search`` response."""
    if not isinstance(payload, Mapping):
        raise ValueError("package_search payload must be an object")
    result = payload.get("result")
    datasets = result.get("results") if isinstance(result, Mapping) else None
    if not isinstance(datasets, list):
        logger.warning("package_search returned no results list")
        return []
    return [dataset for dataset in datasets if isinstance(dataset, Mapping) and _mentions_keyword(dataset)]


def select_resources(dataset: Mapping[str, Any]) -> List[Dict[str, Any]]:
    resources = dataset.get("resources") or []
    selected = []
    for resource in resources:
        if not isinstance(resource, Mapping) or not resource.get("id"):
            continue
        fmt = str(resource.get("format") or "").lower()
        if fmt == "json" or resource.get("datastore_active"):
            selected.append(resource)
    return selected


def parse_records(records: Iterable[Any], resource_id: str, dataset_title: Optional[str] = None) -> List[RawRecord]:
    """Parse ``datastore_search`` rows; ids are scoped to their resource."""
    namespace = f"gov/{resource_id}"
    parsed: List[RawRecord] = []
    for record in records or []:
        if not isinstance(record, Mapping):
            logger.warning("Skipping non-object record in dataset %s", dataset_title)
            continue
        try:
            raw = raw_from_mapping(record, namespace)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping malformed record in dataset %s: %s", dataset_title, exc)
            continue
        if dataset_title:
            raw.extras["dataset"] = dataset_title
        parsed.append(raw)
    return parsed


def _fetch_resource(
    fetcher: RateLimitedFetcher,
    resource_id: str,
    api_key: str,
    cancel_event: Optional[threading.Event],
) -> List[Any]:
    payload = fetcher.fetch(
        f"{_BASE_URL}/datastore_search",
        params={"resource_id": resource_id, "limit": _RECORD_LIMIT, "api-key": api_key},
        cancel_event=cancel_event,
    )
    result = payload.get("result") if isinstance(payload, Mapping) else None
    records = result.get("records") if isinstance(result, Mapping) else None
    if not isinstance(records, list):
        raise ValueError(f"datastore_search for {resource_id} returned no records list")
    return records


def fetch_government_datasets(
    fetcher: RateLimitedFetcher,
    bounds: BoundingBox,
    city: str,
    settings: Settings,
    cancel_event: Optional[threading.Event] = None,
) -> List[RawRecord]:
    api_key = settings.data_gov_in_api_key
    if not api_key:
        logger.warning("DATA_GOV_IN_API_KEY is not configured; skipping government datasets")
        return []

    logger.info("Starting government dataset ingestion for %s", city)
    payload = fetcher.fetch(
        f"{_BASE_URL}/package_search",
        params={"q": _KEYWORD, "fq": "res_format:JSON", "rows": _SEARCH_ROWS, "api-key": api_key},
        cancel_event=cancel_event,
    )
    try:
        datasets = select_datasets(payload)
    except ValueError as exc:
        raise SourceUnavailableError(f"package_search returned an unparseable payload: {exc}", source="government_datasets") from exc

    logger.info("Found %d toilet-related datasets", len(datasets))
    records: List[RawRecord] = []
    for dataset in datasets:
        title = dataset.get("title") or dataset.get("name")
        for resource in select_resources(dataset):
            try:
                rows = _fetch_resource(fetcher, resource["id"], api_key, cancel_event)
            except FetchCancelledError:
                raise
            except (SourceUnavailableError, ValueError) as exc:
                logger.warning("Skipping resource %s of dataset %s: %s", resource.get("id"), title, exc)
                continue
            parsed = parse_records(rows, resource["id"], title)
            logger.info("Dataset %s resource %s: %d records", title, resource.get("id"), len(parsed))
            records.extend(parsed)

    return records
