"""
Riksantikvaren (Norwegian Directorate for Cultural Heritage) source adapter.

Queries one layer of the ArcGIS MapServer behind kulturminnesok.no with the
viewport as an envelope. Each feature becomes a RawRecord of kind "feature";
the heritage type (KULTURTPE) is mapped onto OSM-style ``historic`` tags so
the cultural heritage categories can claim the record.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp

from trakke.config import get_config
from trakke.models import NORWAY_BOUNDS, RawRecord, ViewportBounds
from trakke.providers.base import (
    AdapterMetadata,
    CancelledByCaller,
    MalformedResponseError,
    RateLimitError,
    ServiceError,
    SourceAdapter,
    SourceTimeoutError,
    TransportError,
)
from trakke.providers.utils import get_session, parse_retry_after

KULTURMINNESOK_URL = "https://kulturminnesok.no/minne/?objektId={}"

# attribute -> tag
ATTRIBUTE_TAGS = (
    ("NAVN", "name"),
    ("BESKRIVELSE", "description"),
    ("KULTURTPE", "heritage:type"),
    ("DATERING", "heritage:period"),
    ("VERNESTATUS", "heritage:protection"),
    ("KOMMUNE", "addr:city"),
    ("FYLKE", "is_in"),
    ("KULTURMINNE_ID", "kulturminne_id"),
)

# first match on the lowercased KULTURTPE wins
HERITAGE_TYPE_TAGS = (
    (("gravfelt", "gravhaug", "steinalder"), {"historic": "archaeological_site"}),
    (("vrak", "undervanns"), {"historic": "archaeological_site", "archaeological_site": "shipwreck"}),
    (("krig", "militær", "festning"), {"historic": "fort"}),
    (("kirke", "bygning", "hus"), {"historic": "building"}),
)
DEFAULT_HERITAGE_TAGS = {"historic": "memorial"}


def heritage_type_tags(kulturtype: Optional[str]) -> Dict[str, str]:
    """OSM-vocabulary tags for a Riksantikvaren heritage type."""
    kind = (kulturtype or "").lower()
    for needles, tags in HERITAGE_TYPE_TAGS:
        if any(needle in kind for needle in needles):
            return dict(tags)
    return dict(DEFAULT_HERITAGE_TAGS)


class RiksantikvarenAdapter(SourceAdapter):
    source = "riksantikvaren"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        url: Optional[str] = None,
        layer: Optional[int] = None,
        max_records: Optional[int] = None,
        clamp_to_norway: Optional[bool] = None,
    ):
        super().__init__()
        source_config = get_config().source_config
        self._session = session
        self.url = (url or source_config.riksantikvaren_url).rstrip("/")
        self.layer = source_config.riksantikvaren_layer if layer is None else layer
        self.max_records = max_records or source_config.riksantikvaren_max_records
        self.user_agent = source_config.overpass_user_agent
        self.clamp_to_norway = (
            source_config.clamp_to_norway if clamp_to_norway is None else clamp_to_norway
        )

    @property
    def query_url(self) -> str:
        return f"{self.url}/{self.layer}/query"

    def get_metadata(self) -> AdapterMetadata:
        return AdapterMetadata(
            name="riksantikvaren-arcgis",
            source=self.source,
            description=f"Riksantikvaren heritage layer {self.layer}",
            endpoint=self.query_url,
        )

    def build_params(self, bounds: ViewportBounds) -> dict:
        return {
            "f": "json",
            "where": "1=1",
            "geometry": bounds.as_arcgis_envelope(),
            "geometryType": "esriGeometryEnvelope",
            "inSR": "4326",
            "outSR": "4326",
            "spatialRel": "esriSpatialRelIntersects",
            "outFields": "*",
            "returnGeometry": "true",
            "resultRecordCount": str(self.max_records),
        }

    async def fetch(self, query, bounds, timeout=None, token=None) -> List[RawRecord]:
        if self.clamp_to_norway:
            clamped = bounds.intersection(NORWAY_BOUNDS)
            if clamped is None:
                self.logger.debug(f"[RIKSANTIKVAREN] {query.name}: viewport outside Norway, skipping request")
                return []
            bounds = clamped

        if token is not None and token.cancelled:
            raise CancelledByCaller(f"{query.name} cancelled", source=self.source, query=query.name)

        client_timeout = aiohttp.ClientTimeout(total=timeout or get_config().get_timeout("viewport"))
        try:
            async with get_session(self._session) as session:
                async with session.get(
                    self.query_url,
                    params=self.build_params(bounds),
                    headers={"User-Agent": self.user_agent},
                    timeout=client_timeout,
                ) as resp:
                    if resp.status == 429:
                        raise RateLimitError(
                            f"Riksantikvaren rate limited {query.name}",
                            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                            source=self.source,
                            query=query.name,
                        )
                    if not 200 <= resp.status < 300:
                        raise ServiceError(
                            f"Riksantikvaren returned {resp.status} for {query.name}",
                            status=resp.status,
                            source=self.source,
                            query=query.name,
                        )
                    try:
                        payload = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError, aiohttp.ContentTypeError) as e:
                        raise MalformedResponseError(
                            f"Riksantikvaren returned invalid JSON for {query.name}: {e}",
                            source=self.source,
                            query=query.name,
                        )
        except asyncio.TimeoutError:
            raise SourceTimeoutError(
                f"Riksantikvaren request for {query.name} timed out", source=self.source, query=query.name
            )
        except aiohttp.ClientError as e:
            raise TransportError(
                f"Riksantikvaren request for {query.name} failed: {e}", source=self.source, query=query.name
            )

        records = self.parse_features(payload, query.name)
        self.logger.info(f"[RIKSANTIKVAREN] {query.name}: {len(records)} heritage sites")
        return records

    def parse_features(self, payload: Any, query_name: str = "") -> List[RawRecord]:
        """Raw records from an ArcGIS query response.

        ArcGIS reports errors with HTTP 200 and an ``error`` object.

        Raises:
            ServiceError: If the payload is an ArcGIS error object
            MalformedResponseError: If the payload has no features list
        """
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
            code = error.get("code")
            raise ServiceError(
                f"Riksantikvaren error {code}: {error.get('message', '')}",
                status=code if isinstance(code, int) else None,
                source=self.source,
                query=query_name,
            )
        features = payload.get("features") if isinstance(payload, dict) else None
        if not isinstance(features, list):
            raise MalformedResponseError(
                f"Riksantikvaren response for {query_name} has no features list",
                source=self.source,
                query=query_name,
            )

        records = []
        for feature in features:
            record = self._to_record(feature)
            if record is not None:
                records.append(record)
        return records

    def _to_record(self, feature: Any) -> Optional[RawRecord]:
        if not isinstance(feature, dict):
            return None
        attrs = feature.get("attributes") or {}
        geometry = feature.get("geometry") or {}
        x, y = geometry.get("x"), geometry.get("y")
        if not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
            self.logger.debug(f"[RIKSANTIKVAREN] skipping feature {attrs.get('OBJECTID')} without point geometry")
            return None
        if not attrs.get("NAVN"):
            self.logger.debug(f"[RIKSANTIKVAREN] skipping unnamed feature {attrs.get('OBJECTID')}")
            return None

        tags = {}
        for attribute, key in ATTRIBUTE_TAGS:
            value = attrs.get(attribute)
            if value not in (None, ""):
                tags[key] = str(value)
        tags.update(heritage_type_tags(attrs.get("KULTURTPE")))
        if attrs.get("KULTURMINNE_ID"):
            tags["website"] = KULTURMINNESOK_URL.format(attrs["KULTURMINNE_ID"])

        external_id = attrs.get("OBJECTID") or attrs.get("KULTURMINNE_ID")
        return RawRecord(
            external_id=str(external_id) if external_id is not None else None,
            kind="feature",
            lat=float(y),
            lon=float(x),
            tags=tags,
        )
