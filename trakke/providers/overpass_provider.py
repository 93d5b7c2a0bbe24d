"""
Overpass API source adapter.

One POST per shared query: the QL selects node/way/relation elements for
each tag filter inside the (Norway-clamped) viewport and asks for centroids
so ways and relations carry a position.
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

ELEMENT_TYPES = ("node", "way", "relation")


class OverpassAdapter(SourceAdapter):
    source = "osm"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
        query_timeout: Optional[int] = None,
        clamp_to_norway: Optional[bool] = None,
    ):
        super().__init__()
        source_config = get_config().source_config
        self._session = session
        self.url = url or source_config.overpass_url
        self.user_agent = user_agent or source_config.overpass_user_agent
        self.query_timeout = query_timeout or source_config.overpass_query_timeout
        self.clamp_to_norway = (
            source_config.clamp_to_norway if clamp_to_norway is None else clamp_to_norway
        )

    def get_metadata(self) -> AdapterMetadata:
        return AdapterMetadata(
            name="overpass",
            source=self.source,
            description="OpenStreetMap tag queries through the Overpass API",
            endpoint=self.url,
            rate_limited=True,
        )

    def build_query(self, query, bounds: ViewportBounds) -> str:
        """Overpass QL for every tag filter of query inside bounds."""
        bbox = bounds.as_overpass_bbox()
        lines = []
        for tag_filter in query.tag_filters:
            selector = tag_filter.to_ql()
            for element in ELEMENT_TYPES:
                lines.append(f"  {element}{selector}({bbox});")
        body = "\n".join(lines)
        return f"[out:json][timeout:{self.query_timeout}];\n(\n{body}\n);\nout center tags;"

    async def fetch(self, query, bounds, timeout=None, token=None) -> List[RawRecord]:
        if self.clamp_to_norway:
            clamped = bounds.intersection(NORWAY_BOUNDS)
            if clamped is None:
                self.logger.debug(f"[OVERPASS] {query.name}: viewport outside Norway, skipping request")
                return []
            bounds = clamped

        if token is not None and token.cancelled:
            raise CancelledByCaller(f"{query.name} cancelled", source=self.source, query=query.name)

        ql = self.build_query(query, bounds)
        headers = {"User-Agent": self.user_agent}
        client_timeout = aiohttp.ClientTimeout(total=timeout or get_config().get_timeout("viewport"))

        try:
            async with get_session(self._session) as session:
                async with session.post(
                    self.url, data={"data": ql}, headers=headers, timeout=client_timeout
                ) as resp:
                    if resp.status == 429:
                        raise RateLimitError(
                            f"Overpass rate limited {query.name}",
                            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                            source=self.source,
                            query=query.name,
                        )
                    if not 200 <= resp.status < 300:
                        raise ServiceError(
                            f"Overpass returned {resp.status} for {query.name}",
                            status=resp.status,
                            source=self.source,
                            query=query.name,
                        )
                    try:
                        payload = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError, aiohttp.ContentTypeError) as e:
                        raise MalformedResponseError(
                            f"Overpass returned invalid JSON for {query.name}: {e}",
                            source=self.source,
                            query=query.name,
                        )
        except asyncio.TimeoutError:
            raise SourceTimeoutError(
                f"Overpass request for {query.name} timed out", source=self.source, query=query.name
            )
        except aiohttp.ClientError as e:
            raise TransportError(
                f"Overpass request for {query.name} failed: {e}", source=self.source, query=query.name
            )

        records = self.parse_elements(payload, query.name)
        self.logger.info(f"[OVERPASS] {query.name}: {len(records)} elements")
        return records

    def parse_elements(self, payload: Any, query_name: str = "") -> List[RawRecord]:
        """Raw records from an Overpass JSON payload.

        Raises:
            MalformedResponseError: If the payload has no elements list
        """
        elements = payload.get("elements") if isinstance(payload, dict) else None
        if not isinstance(elements, list):
            raise MalformedResponseError(
                f"Overpass response for {query_name} has no elements list",
                source=self.source,
                query=query_name,
            )
        return [self._to_record(el) for el in elements if isinstance(el, dict)]

    @staticmethod
    def _to_record(element: Dict[str, Any]) -> RawRecord:
        kind = element.get("type") or "node"
        osm_id = element.get("id")
        center = element.get("center")
        tags = element.get("tags")
        return RawRecord(
            external_id=f"{kind}/{osm_id}" if osm_id is not None else None,
            kind=kind,
            lat=element.get("lat"),
            lon=element.get("lon"),
            center=(
                (center.get("lat"), center.get("lon"))
                if isinstance(center, dict) and "lat" in center and "lon" in center
                else None
            ),
            tags={str(k): str(v) for k, v in tags.items()} if isinstance(tags, dict) else {},
        )
