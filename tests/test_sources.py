from facility_ingest.core import sources
from facility_ingest.core.config import Settings
from facility_ingest.models import QueryStrategy, Source, SourceConfig, TrustLevel


def test_default_registry_order_and_trust():
    registry = sources.load_sources(Settings())

    assert [source.key for source in registry] == [
        "osm_overpass",
        "planet_osm",
        "government_datasets",
        "regional",
        "verified_locations",
    ]
    by_key = {source.key: source for source in registry}
    assert by_key["government_datasets"].trust_level is TrustLevel.HIGH
    assert by_key["regional"].source is Source.REGIONAL
    assert by_key["verified_locations"].strategy is QueryStrategy.STATIC_SEED
    assert all(callable(source.adapter) for source in registry)


def test_load_sources_honours_disabled_list(caplog):
    settings = Settings(disabled_sources=("regional", "not_a_source"))

    with caplog.at_level("WARNING"):
        registry = sources.load_sources(settings)

    assert "regional" not in [source.key for source in registry]
    assert "not_a_source" in caplog.text


def test_load_sources_skips_disabled_entries_and_missing_adapters():
    configured = [
        SourceConfig("b", Source.OSM, TrustLevel.MEDIUM, 2, QueryStrategy.BOUNDS, lambda *args: []),
        SourceConfig("a", Source.USER, TrustLevel.HIGH, 1, QueryStrategy.BOUNDS, lambda *args: []),
        SourceConfig("off", Source.OSM, TrustLevel.LOW, 3, QueryStrategy.BOUNDS, lambda *args: [], enabled=False),
        SourceConfig("empty", Source.OSM, TrustLevel.LOW, 4, QueryStrategy.BOUNDS),
    ]

    assert [source.key for source in sources.load_sources(Settings(), configured)] == ["a", "b"]
