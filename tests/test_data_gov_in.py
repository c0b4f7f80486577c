import pytest

from facility_ingest.core.config import Settings
from facility_ingest.core.errors import SourceUnavailableError
from facility_ingest.models import BoundingBox
from facility_ingest.vendors import data_gov_in

BOUNDS = BoundingBox(18.9, 72.8, 19.0, 72.9)
SETTINGS = Settings(data_gov_in_api_key="secret")

SEARCH_PAYLOAD = {
    "result": {
        "results": [
            {
                "title": "Public Toilets in Greater Mumbai",
                "resources": [
                    {"id": "res-json", "format": "JSON"},
                    {"id": "res-csv", "format": "CSV"},
                    {"id": "res-store", "format": "XLS", "datastore_active": True},
                ],
            },
            {"title": "Rainfall statistics", "resources": [{"id": "rain", "format": "JSON"}]},
            {"title": "Sanitation survey", "keywords": ["Toilet", "SBM"], "resources": [{"id": "res-broken", "format": "json"}]},
        ]
    }
}


class RoutingFetcher:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def fetch(self, url, params=None, **kwargs):
        self.calls.append((url, params))
        key = params.get("resource_id") if params and "resource_id" in params else url.rsplit("/", 1)[-1]
        outcome = self.routes[key]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_select_datasets_filters_toilet_datasets():
    datasets = data_gov_in.select_datasets(SEARCH_PAYLOAD)

    assert [dataset["title"] for dataset in datasets] == ["Public Toilets in Greater Mumbai", "Sanitation survey"]


def test_select_resources_keeps_json_and_datastore_resources():
    dataset = SEARCH_PAYLOAD["result"]["results"][0]

    assert [resource["id"] for resource in data_gov_in.select_resources(dataset)] == ["res-json", "res-store"]


def test_fetch_government_datasets_collects_records_and_skips_failed_resources(caplog):
    client = RoutingFetcher(
        {
            "package_search": SEARCH_PAYLOAD,
            "res-json": {"result": {"records": [{"toilet_name": "Dadar TT", "lat": "19.018", "long": "72.843"}]}},
            "res-store": {"result": {"records": [{"Name": "Sion Block", "Latitude": 19.04, "Longitude": 72.86}, "junk"]}},
            "res-broken": SourceUnavailableError("www.data.gov.in unavailable", source="www.data.gov.in"),
        }
    )

    with caplog.at_level("WARNING"):
        records = data_gov_in.fetch_government_datasets(client, BOUNDS, "mumbai", SETTINGS)

    assert [record.name for record in records] == ["Dadar TT", "Sion Block"]
    assert records[0].extras["dataset"] == "Public Toilets in Greater Mumbai"
    assert "Skipping resource res-broken" in caplog.text
    search_params = client.calls[0][1]
    assert search_params["q"] == "toilet"
    assert search_params["api-key"] == "secret"


def test_fetch_government_datasets_without_key_is_skipped(caplog):
    client = RoutingFetcher({})

    with caplog.at_level("WARNING"):
        assert data_gov_in.fetch_government_datasets(client, BOUNDS, "mumbai", Settings()) == []

    assert client.calls == []
    assert "DATA_GOV_IN_API_KEY" in caplog.text


def test_fetch_government_datasets_raises_when_search_unusable():
    client = RoutingFetcher({"package_search": "<html>maintenance</html>"})

    with pytest.raises(SourceUnavailableError):
        data_gov_in.fetch_government_datasets(client, BOUNDS, "mumbai", SETTINGS)


def test_row_ids_are_scoped_to_their_resource():
    dataset = {"title": "Ward toilets", "resources": [{"id": "res-a", "format": "JSON"}, {"id": "res-b", "format": "JSON"}]}
    client = RoutingFetcher(
        {
            "package_search": {"result": {"results": [dataset]}},
            "res-a": {"result": {"records": [{"_id": 1, "name": "A", "lat": 18.97, "lon": 72.82}]}},
            "res-b": {"result": {"records": [{"_id": 1, "name": "B", "lat": 19.05, "lon": 72.85}, {"name": "No id", "lat": 19.0, "lon": 72.8}]}},
        }
    )

    records = data_gov_in.fetch_government_datasets(client, BOUNDS, "mumbai", SETTINGS)

    assert [record.source_ref for record in records] == ["gov/res-a/1", "gov/res-b/1", None]
