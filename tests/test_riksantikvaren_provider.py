import asyncio

import aiohttp
import pytest

from trakke.categories import SOURCE_QUERIES
from trakke.models import ViewportBounds
from trakke.providers.base import (
    MalformedResponseError,
    RateLimitError,
    ServiceError,
    SourceTimeoutError,
    TransportError,
)
from trakke.providers.riksantikvaren_provider import RiksantikvarenAdapter, heritage_type_tags
from tests.fakes import FakeResponse, FakeSession

BOUNDS = ViewportBounds(north=59.6, south=59.2, east=10.6, west=10.2)
HERITAGE = SOURCE_QUERIES["heritage_sites"]

PAYLOAD = {
    "features": [
        {
            "attributes": {
                "OBJECTID": 1201,
                "KULTURMINNE_ID": "86176",
                "NAVN": "Borrehaugene",
                "BESKRIVELSE": "Gravfelt fra vikingtid",
                "KULTURTPE": "Gravfelt",
                "DATERING": "Vikingtid",
                "VERNESTATUS": "Automatisk fredet",
                "KOMMUNE": "Horten",
                "FYLKE": "Vestfold",
            },
            "geometry": {"x": 10.45, "y": 59.38},
        },
        {
            "attributes": {"OBJECTID": 1202, "NAVN": "Uten posisjon"},
            "geometry": None,
        },
        {
            "attributes": {"OBJECTID": 1203, "KULTURTPE": "Bygning"},
            "geometry": {"x": 10.4, "y": 59.3},
        },
    ],
}


def adapter(session, **kwargs):
    return RiksantikvarenAdapter(
        session=session, url="https://arcgis.test/MapServer/", layer=4, max_records=500, **kwargs
    )


@pytest.mark.asyncio
async def test_query_request_and_parsing():
    session = FakeSession(FakeResponse(200, payload=PAYLOAD))
    records = await adapter(session).fetch(HERITAGE, BOUNDS)

    method, url, kwargs = session.requests[0]
    assert method == "GET"
    assert url == "https://arcgis.test/MapServer/4/query"
    params = kwargs["params"]
    assert params["f"] == "json"
    assert params["where"] == "1=1"
    assert params["geometry"] == "10.2,59.2,10.6,59.6"
    assert params["geometryType"] == "esriGeometryEnvelope"
    assert params["inSR"] == "4326"
    assert params["outFields"] == "*"
    assert params["returnGeometry"] == "true"
    assert params["resultRecordCount"] == "500"

    # one feature lacks geometry, one lacks a name
    assert len(records) == 1
    rec = records[0]
    assert rec.external_id == "1201"
    assert rec.kind == "feature"
    assert (rec.lat, rec.lon) == (59.38, 10.45)
    assert rec.tags["name"] == "Borrehaugene"
    assert rec.tags["description"] == "Gravfelt fra vikingtid"
    assert rec.tags["heritage:period"] == "Vikingtid"
    assert rec.tags["heritage:protection"] == "Automatisk fredet"
    assert rec.tags["addr:city"] == "Horten"
    assert rec.tags["historic"] == "archaeological_site"
    assert rec.tags["website"] == "https://kulturminnesok.no/minne/?objektId=86176"


@pytest.mark.parametrize("kulturtype,expected", [
    ("Gravhaug", {"historic": "archaeological_site"}),
    ("Skipsvrak", {"historic": "archaeological_site", "archaeological_site": "shipwreck"}),
    ("Festningsanlegg", {"historic": "fort"}),
    ("Militær anlegg", {"historic": "fort"}),
    ("Kirkested", {"historic": "building"}),
    ("Minnestein", {"historic": "memorial"}),
    (None, {"historic": "memorial"}),
])
def test_heritage_type_tags(kulturtype, expected):
    assert heritage_type_tags(kulturtype) == expected


@pytest.mark.asyncio
async def test_arcgis_error_object_is_a_service_error():
    payload = {"error": {"code": 400, "message": "Invalid or missing input parameters."}}
    with pytest.raises(ServiceError) as exc:
        await adapter(FakeSession(FakeResponse(200, payload=payload))).fetch(HERITAGE, BOUNDS)
    assert exc.value.status == 400
    assert exc.value.source == "riksantikvaren"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    FakeResponse(200, payload={"fields": []}),
    FakeResponse(200, payload=["not", "an", "object"]),
    FakeResponse(200, json_error=ValueError("Expecting value")),
])
async def test_unreadable_responses_are_malformed(response):
    with pytest.raises(MalformedResponseError):
        await adapter(FakeSession(response)).fetch(HERITAGE, BOUNDS)


@pytest.mark.asyncio
async def test_http_errors_map_to_source_errors():
    limited = FakeResponse(429, headers={"Retry-After": "12"})
    with pytest.raises(RateLimitError) as exc:
        await adapter(FakeSession(limited)).fetch(HERITAGE, BOUNDS)
    assert exc.value.retry_after == 12.0

    with pytest.raises(ServiceError) as exc:
        await adapter(FakeSession(FakeResponse(502))).fetch(HERITAGE, BOUNDS)
    assert exc.value.status == 502

    with pytest.raises(SourceTimeoutError):
        await adapter(FakeSession(error=asyncio.TimeoutError())).fetch(HERITAGE, BOUNDS)
    with pytest.raises(TransportError):
        await adapter(FakeSession(error=aiohttp.ClientConnectionError("refused"))).fetch(HERITAGE, BOUNDS)


@pytest.mark.asyncio
async def test_viewport_outside_norway_skips_request():
    session = FakeSession(FakeResponse(200, payload=PAYLOAD))
    outside = ViewportBounds(north=49, south=48, east=3, west=2)
    assert await adapter(session).fetch(HERITAGE, outside) == []
    assert session.requests == []


def test_metadata_and_routing():
    ra = adapter(FakeSession())
    meta = ra.get_metadata()
    assert meta.source == "riksantikvaren"
    assert meta.endpoint == "https://arcgis.test/MapServer/4/query"
    assert ra.handles(HERITAGE)
    assert not ra.handles(SOURCE_QUERIES["cultural_heritage"])
