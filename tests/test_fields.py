import math

from facility_ingest.vendors import fields


def test_probe_field_prefers_candidate_order_and_ignores_case():
    data = {"Latitude": "18.97", "y": 1.0, "name": "  "}

    assert fields.probe_field(data, ("lat", "latitude", "y")) == "18.97"
    assert fields.probe_field(data, ("name", "title"), default="fallback") == "fallback"
    assert fields.probe_field(None, ("lat",)) is None


def test_to_float_rejects_non_numbers():
    assert fields.to_float("19.1 ") == 19.1
    assert fields.to_float(7) == 7.0
    assert fields.to_float(True) is None
    assert fields.to_float("abc") is None
    assert fields.to_float(math.nan) is None
    assert fields.to_float(float("inf")) is None


def test_extract_coordinates_top_level_and_nested():
    assert fields.extract_coordinates({"LAT": 18.9, "lng": 72.8}) == (18.9, 72.8)
    assert fields.extract_coordinates({"location": {"latitude": "28.6", "longitude": "77.2"}}) == ("28.6", "77.2")
    assert fields.extract_coordinates({"geometry": {"type": "Point", "coordinates": [72.8, 18.9]}}) == (18.9, 72.8)
    assert fields.extract_coordinates({"name": "nowhere"}) == (None, None)


def test_flag_and_wheelchair_token():
    assert fields.flag("Yes") is True
    assert fields.flag("0") is False
    assert fields.flag("maybe") is None
    assert fields.wheelchair_token(True) == "yes"
    assert fields.wheelchair_token("no") == "no"
    assert fields.wheelchair_token("limited") == "limited"
    assert fields.wheelchair_token(None) is None


def test_raw_from_mapping_resolves_field_variants():
    raw = fields.raw_from_mapping(
        {
            "Facility_Name": "Ward 5 Toilet Block",
            "Latitude": "19.01",
            "Longitude": "72.84",
            "maintained_by": "MCGM",
            "Access_Type": "Public",
            "handicap_accessible": "Y",
            "_id": 42,
            "verified": "true",
        }
    )

    assert raw.name == "Ward 5 Toilet Block"
    assert (raw.latitude, raw.longitude) == ("19.01", "72.84")
    assert raw.operator == "MCGM"
    assert raw.access == "Public"
    assert raw.wheelchair == "yes"
    assert raw.source_ref == "42"
    assert raw.verified is True


def test_raw_from_mapping_prefixes_ref_with_namespace():
    assert fields.raw_from_mapping({"_id": 7, "lat": 19.0, "lon": 72.8}, "gov/res-a").source_ref == "gov/res-a/7"
    assert fields.raw_from_mapping({"lat": 19.0, "lon": 72.8}, "gov/res-a").source_ref is None
