"""
Source adapter interfaces and the source error taxonomy.

Adapters translate one SourceQuery plus a viewport into raw records:
- One request per query (no retry; that belongs to the RetryController)
- Transport failures are mapped onto SourceError subclasses
- Results are RawRecord, never POI
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, TYPE_CHECKING
from dataclasses import dataclass
import logging

from trakke.models import RawRecord, ViewportBounds

if TYPE_CHECKING:
    from trakke.categories import SourceQuery
    from trakke.utils.async_utils import CancellationToken


@dataclass
class AdapterMetadata:
    """Metadata about a source adapter."""
    name: str
    source: str
    description: str
    endpoint: str
    rate_limited: bool = False


class SourceAdapter(ABC):
    """Base source adapter interface.

    Subclasses set ``source`` to the value used in POI ids ("osm", "wfs").
    """

    source: str = ""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def fetch(
        self,
        query: "SourceQuery",
        bounds: ViewportBounds,
        timeout: Optional[float] = None,
        token: Optional["CancellationToken"] = None,
    ) -> List[RawRecord]:
        """Run one query inside bounds.

        Args:
            query: The shared source query to execute
            bounds: Viewport to restrict the query to
            timeout: Per-request timeout in seconds
            token: Cancellation token checked before the request is issued

        Returns:
            Raw records in source order

        Raises:
            SourceError: If the request fails or the response cannot be read
        """
        pass

    @abstractmethod
    def get_metadata(self) -> AdapterMetadata:
        pass

    def handles(self, query: "SourceQuery") -> bool:
        return query.source == self.source


class SourceError(Exception):
    """Base exception for source errors."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        query: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize source error.

        Args:
            message: Error message
            source: Source that failed ("osm", "wfs")
            query: Name of the query that failed
            details: Additional error details
        """
        super().__init__(message)
        self.source = source
        self.query = query
        self.details = details or {}


class TransportError(SourceError):
    """Raised when the connection to a source fails."""
    pass


class SourceTimeoutError(SourceError):
    """Raised when a source request times out."""
    pass


class RateLimitError(SourceError):
    """Raised when a source answers HTTP 429. Recoverable."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServiceError(SourceError):
    """Raised on a non-2xx response other than 429, or a service exception document."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status


class MalformedResponseError(SourceError):
    """Raised when a response body cannot be parsed."""
    pass


class CancelledByCaller(SourceError):
    """Raised when the caller cancelled the pass before or during a request."""
    pass
