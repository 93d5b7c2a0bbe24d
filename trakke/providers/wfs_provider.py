"""
Geonorge WFS source adapter (public emergency shelters).

Issues a WFS 2.0 GetFeature request bounded by the viewport and reads the
GML response with BeautifulSoup. Each feature becomes one RawRecord of kind
"feature" keyed by its lokalId.
"""

import asyncio
from typing import List, Optional

import aiohttp
from bs4 import BeautifulSoup

from trakke.config import get_config
from trakke.models import NORWAY_BOUNDS, RawRecord
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

FEATURE_FIELDS = ("romnr", "plasser", "adresse")


def _local(name: Optional[str]) -> str:
    """Tag name without namespace prefix (html.parser keeps "app:romnr" as one lowercased name)."""
    return (name or "").split(":")[-1]


def _find_local(node, local_name: str):
    return node.find(lambda tag: _local(tag.name) == local_name)


class WFSAdapter(SourceAdapter):
    source = "wfs"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        url: Optional[str] = None,
        type_name: Optional[str] = None,
        max_features: Optional[int] = None,
        clamp_to_norway: Optional[bool] = None,
    ):
        super().__init__()
        source_config = get_config().source_config
        self._session = session
        self.url = url or source_config.wfs_shelter_url
        self.type_name = type_name or source_config.wfs_shelter_type
        self.max_features = max_features or source_config.wfs_max_features
        self.user_agent = source_config.overpass_user_agent
        self.clamp_to_norway = (
            source_config.clamp_to_norway if clamp_to_norway is None else clamp_to_norway
        )

    def get_metadata(self) -> AdapterMetadata:
        return AdapterMetadata(
            name="geonorge-wfs",
            source=self.source,
            description=f"Geonorge WFS layer {self.type_name}",
            endpoint=self.url,
        )

    def build_params(self, bounds) -> dict:
        return {
            "service": "WFS",
            "version": "2.0.0",
            "request": "GetFeature",
            "typeNames": self.type_name,
            "outputFormat": "application/gml+xml; version=3.2",
            "srsName": "EPSG:4326",
            "bbox": bounds.as_wfs_bbox(),
            "count": str(self.max_features),
        }

    async def fetch(self, query, bounds, timeout=None, token=None) -> List[RawRecord]:
        if self.clamp_to_norway:
            clamped = bounds.intersection(NORWAY_BOUNDS)
            if clamped is None:
                return []
            bounds = clamped

        if token is not None and token.cancelled:
            raise CancelledByCaller(f"{query.name} cancelled", source=self.source, query=query.name)

        client_timeout = aiohttp.ClientTimeout(total=timeout or get_config().get_timeout("viewport"))
        try:
            async with get_session(self._session) as session:
                async with session.get(
                    self.url,
                    params=self.build_params(bounds),
                    headers={"User-Agent": self.user_agent},
                    timeout=client_timeout,
                ) as resp:
                    if resp.status == 429:
                        raise RateLimitError(
                            f"WFS rate limited {query.name}",
                            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                            source=self.source,
                            query=query.name,
                        )
                    if not 200 <= resp.status < 300:
                        raise ServiceError(
                            f"WFS returned {resp.status} for {query.name}",
                            status=resp.status,
                            source=self.source,
                            query=query.name,
                        )
                    text = await resp.text()
        except asyncio.TimeoutError:
            raise SourceTimeoutError(f"WFS request for {query.name} timed out", source=self.source, query=query.name)
        except aiohttp.ClientError as e:
            raise TransportError(f"WFS request for {query.name} failed: {e}", source=self.source, query=query.name)

        records = self.parse_features(text, query.name)
        self.logger.info(f"[WFS] {query.name}: {len(records)} features")
        return records

    def parse_features(self, text: str, query_name: str = "") -> List[RawRecord]:
        """Raw records from a GML FeatureCollection.

        Raises:
            ServiceError: If the document is a WFS exception report
            MalformedResponseError: If the document is not a feature collection
        """
        if not text or "<" not in text:
            raise MalformedResponseError(
                f"WFS response for {query_name} is not XML", source=self.source, query=query_name
            )
        soup = BeautifulSoup(text, "html.parser")

        exception = soup.find(
            lambda tag: _local(tag.name) in ("serviceexception", "exceptiontext")
        )
        if exception is not None:
            raise ServiceError(
                f"WFS service exception: {exception.get_text(strip=True)}",
                source=self.source,
                query=query_name,
            )
        if _find_local(soup, "featurecollection") is None:
            raise MalformedResponseError(
                f"WFS response for {query_name} has no FeatureCollection",
                source=self.source,
                query=query_name,
            )

        feature_name = _local(self.type_name).lower()
        records = []
        for feature in soup.find_all(lambda tag: _local(tag.name) == feature_name):
            record = self._to_record(feature)
            if record is not None:
                records.append(record)
        return records

    def _to_record(self, feature) -> Optional[RawRecord]:
        pos = _find_local(feature, "pos")
        if pos is None:
            self.logger.debug("[WFS] skipping feature without position")
            return None
        # Geonorge serves "lon lat" for this layer
        coords = pos.get_text(strip=True).split()
        if len(coords) != 2:
            self.logger.debug(f"[WFS] skipping feature with position {coords}")
            return None
        try:
            lon, lat = float(coords[0]), float(coords[1])
        except ValueError:
            return None

        lokal_id = _find_local(feature, "lokalid")
        tags = {}
        for name in FEATURE_FIELDS:
            node = _find_local(feature, name)
            if node is not None and node.get_text(strip=True):
                tags[name] = node.get_text(strip=True)

        return RawRecord(
            external_id=lokal_id.get_text(strip=True) if lokal_id is not None else None,
            kind="feature",
            lat=lat,
            lon=lon,
            tags=tags,
        )
