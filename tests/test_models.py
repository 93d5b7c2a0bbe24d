from datetime import datetime, timezone

import pytest

from trakke.admin_store import InMemoryAdminStore
from trakke.categories import Category
from trakke.models import (
    NORWAY_BOUNDS,
    POI,
    InvalidBoundsError,
    PublishedState,
    RawRecord,
    ViewportBounds,
    is_valid_coordinate,
)


def test_bounds_reject_inverted_or_out_of_range():
    with pytest.raises(InvalidBoundsError):
        ViewportBounds(north=59, south=60, east=11, west=10)
    with pytest.raises(InvalidBoundsError):
        ViewportBounds(north=60, south=59, east=10, west=11)
    with pytest.raises(InvalidBoundsError):
        ViewportBounds(north=91, south=59, east=11, west=10)
    with pytest.raises(InvalidBoundsError):
        ViewportBounds.from_mapping({"north": "x", "south": 59, "east": 11, "west": 10})
    with pytest.raises(InvalidBoundsError):
        ViewportBounds.from_mapping({"north": 60, "south": 59, "east": 11})


def test_invalid_bounds_is_a_value_error():
    assert issubclass(InvalidBoundsError, ValueError)


def test_contains_and_quantized_containment():
    outer = ViewportBounds(north=60, south=59, east=11, west=10)
    inner = ViewportBounds(north=59.8, south=59.2, east=10.8, west=10.2)
    assert outer.contains(inner)
    assert not inner.contains(outer)
    jitter = ViewportBounds(north=60.00000001, south=59, east=11, west=10)
    assert not outer.contains(jitter)
    assert outer.contains(jitter, precision=4)


def test_intersection_and_bbox_strings():
    b = ViewportBounds(north=60, south=59, east=11, west=10)
    assert b.as_overpass_bbox() == "59,10,60,11"
    assert b.as_wfs_bbox() == "10,59,11,60,EPSG:4326"
    assert b.as_arcgis_envelope() == "10,59,11,60"
    clipped = ViewportBounds(north=58, south=50, east=11, west=2).intersection(NORWAY_BOUNDS)
    assert clipped == ViewportBounds(north=58, south=57.5, east=11, west=4.0)
    assert ViewportBounds(north=50, south=40, east=11, west=10).intersection(NORWAY_BOUNDS) is None


def test_coordinate_validity():
    assert is_valid_coordinate(59.9, 10.7)
    assert not is_valid_coordinate(0, 0)
    assert not is_valid_coordinate(91, 10)
    assert not is_valid_coordinate("59.9", 10.7)
    assert not is_valid_coordinate(float("nan"), 10.7)
    assert is_valid_coordinate(0, 10.7)


def test_raw_record_falls_back_to_center():
    rec = RawRecord(external_id="way/1", kind="way", center=(59.5, 10.5))
    assert rec.coordinates() == (59.5, 10.5)
    assert RawRecord(external_id="node/1", kind="node").coordinates() is None


def test_poi_serialization():
    ts = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    poi = POI(
        id=POI.make_id("osm", Category.CAMPING_SITE, "node/1"),
        name="Camp",
        description="Campingplass for overnatting.",
        category=Category.CAMPING_SITE,
        lat=59.5,
        lng=10.5,
        last_updated=ts,
    )
    assert poi.id == "osm:camping_site:node/1"
    data = PublishedState(pois=[poi], last_updated=ts).to_dict()
    assert data["pois"][0]["category"] == "camping_site"
    assert data["pois"][0]["lastUpdated"] == "2024-06-01T12:00:00+00:00"
    assert data["loading"] is False
    assert data["error"] is None


def test_admin_store_rejects_invalid_coordinates_and_filters_by_category():
    store = InMemoryAdminStore()
    with pytest.raises(ValueError):
        store.add(POI(id="admin:toilets:0", name="Do", description="", category=Category.TOILETS,
                      lat=0, lng=0, source="admin"))
    store.add(POI(id="admin:toilets:1", name="Do", description="", category=Category.TOILETS,
                  lat=60.1, lng=10.2, source="admin"))
    store.add(POI(id="admin:beach:1", name="Strand", description="", category=Category.BEACH,
                  lat=60.1, lng=10.2, source="admin"))
    assert [p.id for p in store.get_by_categories(["toilets"])] == ["admin:toilets:1"]
    assert store.remove("admin:toilets:1") is True
    assert store.remove("admin:toilets:1") is False
    assert len(store) == 1
