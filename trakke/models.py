"""
Core data shapes of the POI pipeline.

ViewportBounds and POI are the only shapes that leave the pipeline;
RawRecord is produced by source adapters and consumed by the normalizer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import math

from trakke.categories import Category


class InvalidBoundsError(ValueError):
    """Raised when viewport bounds violate north > south / east > west."""


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    """True for finite, in-range coordinates that are not the (0, 0) sentinel."""
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return False
    return not (lat == 0 and lng == 0)


@dataclass(frozen=True)
class ViewportBounds:
    """Rectangular viewport in degrees. No antimeridian handling."""
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        for name in ("north", "south", "east", "west"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or math.isnan(value):
                raise InvalidBoundsError(f"{name} must be a number, got {value!r}")
        if not (-90.0 <= self.south < self.north <= 90.0):
            raise InvalidBoundsError(
                f"Invalid latitude range: south={self.south}, north={self.north}"
            )
        if not (-180.0 <= self.west < self.east <= 180.0):
            raise InvalidBoundsError(
                f"Invalid longitude range: west={self.west}, east={self.east}"
            )

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ViewportBounds":
        """Build bounds from a mapping with north/south/east/west keys.

        Raises:
            InvalidBoundsError: If a key is missing or not numeric
        """
        try:
            return cls(
                north=float(data["north"]),
                south=float(data["south"]),
                east=float(data["east"]),
                west=float(data["west"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, InvalidBoundsError):
                raise
            raise InvalidBoundsError(f"Bounds need numeric north/south/east/west: {e}")

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.north, self.south, self.east, self.west)

    def quantized(self, precision: int = 4) -> Tuple[float, float, float, float]:
        """Round each bound so float jitter does not change the value."""
        return tuple(round(v, precision) for v in self.as_tuple())

    def contains(self, other: "ViewportBounds", precision: Optional[int] = None) -> bool:
        """True if other lies fully inside these bounds.

        With precision set, both sides are quantized before comparing.
        """
        if precision is None:
            n, s, e, w = self.as_tuple()
            on, os_, oe, ow = other.as_tuple()
        else:
            n, s, e, w = self.quantized(precision)
            on, os_, oe, ow = other.quantized(precision)
        return n >= on and s <= os_ and e >= oe and w <= ow

    def contains_point(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    def intersection(self, other: "ViewportBounds") -> Optional["ViewportBounds"]:
        """Overlap of two boxes, or None when they do not overlap."""
        north = min(self.north, other.north)
        south = max(self.south, other.south)
        east = min(self.east, other.east)
        west = max(self.west, other.west)
        if north <= south or east <= west:
            return None
        return ViewportBounds(north=north, south=south, east=east, west=west)

    def as_overpass_bbox(self) -> str:
        # Overpass QL order: south,west,north,east
        return f"{self.south},{self.west},{self.north},{self.east}"

    def as_wfs_bbox(self) -> str:
        return f"{self.west},{self.south},{self.east},{self.north},EPSG:4326"

    def as_arcgis_envelope(self) -> str:
        # esriGeometryEnvelope shorthand: xmin,ymin,xmax,ymax
        return f"{self.west},{self.south},{self.east},{self.north}"

    def to_dict(self) -> Dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}


# Geographic extent used to clamp queries and for the full-catalog load
NORWAY_BOUNDS = ViewportBounds(north=72.0, south=57.5, east=32.0, west=4.0)


@dataclass
class RawRecord:
    """Source-specific record before normalization."""
    external_id: Optional[str]
    kind: str  # node | way | relation | feature
    lat: Optional[float] = None
    lon: Optional[float] = None
    center: Optional[Tuple[float, float]] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def coordinates(self) -> Optional[Tuple[float, float]]:
        """Point coordinates, falling back to the centroid for ways/relations."""
        if self.lat is not None and self.lon is not None:
            return (self.lat, self.lon)
        if self.center is not None:
            return self.center
        return None


@dataclass
class POI:
    """Canonical point of interest. The only shape published to the UI."""
    id: str
    name: str
    description: str
    category: Category
    lat: float
    lng: float
    metadata: Dict[str, str] = field(default_factory=dict)
    source: str = "osm"
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def make_id(source: str, category: Category, external_id: str) -> str:
        return f"{source}:{category.value}:{external_id}"

    def has_valid_coordinates(self) -> bool:
        return is_valid_coordinate(self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "lat": self.lat,
            "lng": self.lng,
            "metadata": dict(self.metadata),
            "source": self.source,
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass
class PublishedState:
    """State exposed to the UI layer."""
    pois: List[POI] = field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pois": [p.to_dict() for p in self.pois],
            "loading": self.loading,
            "error": self.error,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }
