"""Source adapters for Overpass, Geonorge WFS and Riksantikvaren."""

from .base import (
    SourceAdapter,
    AdapterMetadata,
    SourceError,
    TransportError,
    SourceTimeoutError,
    RateLimitError,
    ServiceError,
    MalformedResponseError,
    CancelledByCaller,
)

__all__ = [
    "SourceAdapter",
    "AdapterMetadata",
    "SourceError",
    "TransportError",
    "SourceTimeoutError",
    "RateLimitError",
    "ServiceError",
    "MalformedResponseError",
    "CancelledByCaller",
]
