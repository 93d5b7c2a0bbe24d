"""
Category set and the static category -> source query routing table.

Several categories share one underlying source query (the three hut
categories share "huts"). A query's tag filters are the ordered union of
its member categories' tag mappings, and each category's own mapping is
used again to pick its records out of the shared result.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from trakke.models import RawRecord
    from trakke.normalize import NormalizationRule

logger = logging.getLogger(__name__)


class Category(Enum):
    """Closed set of POI classes."""
    # Accommodation
    CAMPING_SITE = "camping_site"
    TENT_AREA = "tent_area"
    WILD_CAMPING = "wild_camping"
    STAFFED_HUTS = "staffed_huts"
    SELF_SERVICE_HUTS = "self_service_huts"
    WILDERNESS_SHELTER = "wilderness_shelter"
    # Outdoor activities
    HIKING = "hiking"
    MOUNTAIN_PEAKS = "mountain_peaks"
    VIEWPOINTS = "viewpoints"
    NATURE_GEMS = "nature_gems"
    CAVES = "caves"
    SKI_TRAILS = "ski_trails"
    OBSERVATION_TOWERS = "observation_towers"
    # Water activities
    SWIMMING = "swimming"
    BEACH = "beach"
    LAKES_RIVERS = "lakes_rivers"
    FISHING_SPOTS = "fishing_spots"
    CANOEING = "canoeing"
    ICE_FISHING = "ice_fishing"
    # Cultural heritage
    WAR_MEMORIALS = "war_memorials"
    PEACE_MONUMENTS = "peace_monuments"
    ARCHAEOLOGICAL = "archaeological"
    CHURCHES = "churches"
    PROTECTED_BUILDINGS = "protected_buildings"
    INDUSTRIAL_HERITAGE = "industrial_heritage"
    # Services and infrastructure
    PARKING = "parking"
    TOILETS = "toilets"
    DRINKING_WATER = "drinking_water"
    REST_AREAS = "rest_areas"
    INFORMATION_BOARDS = "information_boards"
    FIRE_PLACES = "fire_places"
    EMERGENCY_SHELTERS = "emergency_shelters"
    # Transport
    PUBLIC_TRANSPORT = "public_transport"
    TRAIN_STATIONS = "train_stations"
    CABLE_CARS = "cable_cars"
    # Specialized
    MOUNTAIN_SERVICE = "mountain_service"
    ACCESSIBLE_SITES = "accessible_sites"


class QueryFamily(Enum):
    ACCOMMODATION = "accommodation"
    OUTDOOR_ACTIVITY = "outdoor_activity"
    WATER_ACTIVITY = "water_activity"
    CULTURAL_HERITAGE = "cultural_heritage"
    SERVICE_INFRASTRUCTURE = "service_infrastructure"
    TRANSPORT = "transport"
    SPECIALIZED = "specialized"


class PriorityTier(Enum):
    """Ordering of the full-catalog background load."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class TagFilter:
    """One OSM tag condition. value=None means the key only has to be present."""
    key: str
    value: Optional[str] = None

    def matches(self, tags: Dict[str, str]) -> bool:
        if self.key not in tags:
            return False
        return self.value is None or tags[self.key] == self.value

    def to_ql(self) -> str:
        if self.value is None:
            return f'["{self.key}"]'
        return f'["{self.key}"="{self.value}"]'

    @classmethod
    def parse(cls, expr: str) -> "TagFilter":
        """Parse "key=value" or "key=*"."""
        key, _, value = expr.partition("=")
        return cls(key=key, value=None if value in ("", "*") else value)


@dataclass(frozen=True)
class SourceQuery:
    """A shared source query. name is its identity within one pass."""
    name: str
    family: QueryFamily
    source: str
    tag_filters: Tuple[TagFilter, ...] = ()


@dataclass(frozen=True)
class CategoryRoute:
    category: Category
    queries: Tuple[SourceQuery, ...]
    rule: "NormalizationRule"


class UnknownCategoryError(KeyError):
    """Raised when a value is not a member of Category."""
    pass


def _tags(*exprs: str) -> Tuple[TagFilter, ...]:
    return tuple(TagFilter.parse(e) for e in exprs)


# Per-category OSM tag mappings; doubles as the membership predicate
CATEGORY_TAGS: Dict[Category, Tuple[TagFilter, ...]] = {
    Category.CAMPING_SITE: _tags("tourism=camp_site", "tourism=caravan_site", "leisure=camping"),
    Category.TENT_AREA: _tags("tourism=camp_site"),
    Category.WILD_CAMPING: _tags("leisure=camping"),
    Category.STAFFED_HUTS: _tags("tourism=alpine_hut"),
    Category.SELF_SERVICE_HUTS: _tags("tourism=wilderness_hut"),
    Category.WILDERNESS_SHELTER: _tags("amenity=shelter"),
    Category.HIKING: _tags(
        "highway=path", "highway=footway", "highway=pedestrian", "route=hiking", "route=foot"
    ),
    Category.MOUNTAIN_PEAKS: _tags("natural=peak", "natural=volcano"),
    Category.VIEWPOINTS: _tags("tourism=viewpoint", "man_made=tower"),
    Category.NATURE_GEMS: _tags(
        "waterway=waterfall", "natural=cave_entrance", "natural=geyser",
        "natural=glacier", "natural=hot_spring", "natural=arch",
    ),
    Category.CAVES: _tags("natural=cave_entrance"),
    Category.SKI_TRAILS: _tags(
        "piste:type=nordic", "piste:type=downhill", "piste:type=skitour", "route=ski"
    ),
    Category.OBSERVATION_TOWERS: _tags(
        "tower:type=observation", "tower:type=watchtower", "tower:type=fire_observation"
    ),
    Category.SWIMMING: _tags("leisure=swimming_pool", "sport=swimming", "natural=beach"),
    Category.BEACH: _tags("natural=beach", "leisure=beach_resort"),
    Category.LAKES_RIVERS: _tags(
        "natural=water", "waterway=river", "waterway=stream", "natural=lake", "natural=bay"
    ),
    Category.FISHING_SPOTS: _tags("leisure=fishing", "sport=fishing", "natural=water"),
    Category.CANOEING: _tags("sport=canoe", "sport=kayak", "leisure=slipway", "waterway=river"),
    Category.ICE_FISHING: _tags("sport=fishing", "leisure=fishing"),
    Category.WAR_MEMORIALS: _tags(
        "historic=memorial", "historic=monument", "military=bunker", "military=trench",
        "historic=battlefield", "historic=fort", "memorial=war_memorial", "memorial=statue",
    ),
    Category.PEACE_MONUMENTS: _tags("historic=memorial", "memorial=peace_monument"),
    Category.ARCHAEOLOGICAL: _tags(
        "historic=archaeological_site", "historic=ruins", "historic=stone_circle",
        "historic=petroglyphs", "historic=burial_mound", "historic=shieling",
    ),
    Category.CHURCHES: _tags(
        "amenity=place_of_worship", "building=church", "historic=church", "building=chapel"
    ),
    Category.PROTECTED_BUILDINGS: _tags(
        "historic=building", "heritage=*", "historic=manor", "historic=castle"
    ),
    Category.INDUSTRIAL_HERITAGE: _tags(
        "man_made=mine", "man_made=quarry", "historic=industrial"
    ),
    Category.PARKING: _tags("amenity=parking", "highway=rest_area"),
    Category.TOILETS: _tags("amenity=toilets"),
    Category.DRINKING_WATER: _tags("amenity=drinking_water", "natural=spring"),
    Category.REST_AREAS: _tags(
        "highway=rest_area", "amenity=bench", "leisure=picnic_table", "tourism=picnic_site"
    ),
    Category.INFORMATION_BOARDS: _tags("tourism=information"),
    Category.FIRE_PLACES: _tags("leisure=firepit", "amenity=bbq"),
    # WFS features carry no OSM tags; every feature of the shelter layer belongs here
    Category.EMERGENCY_SHELTERS: (),
    Category.PUBLIC_TRANSPORT: _tags(
        "highway=bus_stop", "public_transport=stop_position", "railway=tram_stop",
        "amenity=ferry_terminal",
    ),
    Category.TRAIN_STATIONS: _tags("railway=station", "railway=halt"),
    Category.CABLE_CARS: _tags(
        "aerialway=cable_car", "aerialway=gondola", "aerialway=chair_lift", "aerialway=drag_lift"
    ),
    Category.MOUNTAIN_SERVICE: _tags("amenity=restaurant", "tourism=guest_house"),
    Category.ACCESSIBLE_SITES: _tags("wheelchair=yes", "disabled=yes"),
}


CATEGORY_LABELS: Dict[Category, str] = {
    Category.CAMPING_SITE: "Camping",
    Category.TENT_AREA: "Teltområde",
    Category.WILD_CAMPING: "Fri camping",
    Category.STAFFED_HUTS: "Betjente hytter",
    Category.SELF_SERVICE_HUTS: "Selvbetjente hytter",
    Category.WILDERNESS_SHELTER: "Gapahuk/vindskjul",
    Category.HIKING: "Dagstur",
    Category.MOUNTAIN_PEAKS: "Toppturer",
    Category.VIEWPOINTS: "Utsiktspunkt",
    Category.NATURE_GEMS: "Naturperler",
    Category.CAVES: "Huler",
    Category.SKI_TRAILS: "Skiløyper",
    Category.OBSERVATION_TOWERS: "Observasjonstårn",
    Category.SWIMMING: "Badeplass",
    Category.BEACH: "Strand",
    Category.LAKES_RIVERS: "Elver og innsjøer",
    Category.FISHING_SPOTS: "Fiskeplasser",
    Category.CANOEING: "Padling",
    Category.ICE_FISHING: "Isfiske",
    Category.WAR_MEMORIALS: "Krigsminnesmerker",
    Category.PEACE_MONUMENTS: "Fredsmonumenter",
    Category.ARCHAEOLOGICAL: "Fornminner",
    Category.CHURCHES: "Kirker og religiøse steder",
    Category.PROTECTED_BUILDINGS: "Vernede bygninger",
    Category.INDUSTRIAL_HERITAGE: "Tekniske kulturminner",
    Category.PARKING: "Parkering",
    Category.TOILETS: "Toaletter",
    Category.DRINKING_WATER: "Drikkevann",
    Category.REST_AREAS: "Rasteplasser",
    Category.INFORMATION_BOARDS: "Informasjonstavler",
    Category.FIRE_PLACES: "Bålplasser",
    Category.EMERGENCY_SHELTERS: "Tilfluktsrom",
    Category.PUBLIC_TRANSPORT: "Kollektivtransport",
    Category.TRAIN_STATIONS: "Togstasjoner",
    Category.CABLE_CARS: "Taubaner og heiser",
    Category.MOUNTAIN_SERVICE: "Serveringssteder",
    Category.ACCESSIBLE_SITES: "Universell utforming",
}


_HIGH = (
    Category.HIKING, Category.MOUNTAIN_PEAKS, Category.VIEWPOINTS, Category.STAFFED_HUTS,
    Category.SELF_SERVICE_HUTS, Category.CAMPING_SITE, Category.WILDERNESS_SHELTER,
)
_MEDIUM = (
    Category.NATURE_GEMS, Category.ARCHAEOLOGICAL, Category.CHURCHES, Category.PARKING,
    Category.REST_AREAS, Category.DRINKING_WATER, Category.INFORMATION_BOARDS,
)


def priority_tier(category: Category) -> PriorityTier:
    if category in _HIGH:
        return PriorityTier.HIGH
    if category in _MEDIUM:
        return PriorityTier.MEDIUM
    return PriorityTier.LOW


# query name, family, source, member categories
_QUERY_TABLE = [
    ("camping", QueryFamily.ACCOMMODATION, "osm",
     (Category.CAMPING_SITE, Category.TENT_AREA, Category.WILD_CAMPING)),
    ("huts", QueryFamily.ACCOMMODATION, "osm",
     (Category.STAFFED_HUTS, Category.SELF_SERVICE_HUTS, Category.WILDERNESS_SHELTER)),
    ("outdoor_recreation", QueryFamily.OUTDOOR_ACTIVITY, "osm",
     (Category.HIKING, Category.MOUNTAIN_PEAKS, Category.VIEWPOINTS, Category.NATURE_GEMS,
      Category.CAVES)),
    ("ski_trails", QueryFamily.OUTDOOR_ACTIVITY, "osm", (Category.SKI_TRAILS,)),
    ("observation_towers", QueryFamily.OUTDOOR_ACTIVITY, "osm",
     (Category.OBSERVATION_TOWERS, Category.VIEWPOINTS)),
    ("water_activities", QueryFamily.WATER_ACTIVITY, "osm",
     (Category.SWIMMING, Category.BEACH, Category.LAKES_RIVERS)),
    ("water_sports", QueryFamily.WATER_ACTIVITY, "osm",
     (Category.FISHING_SPOTS, Category.CANOEING, Category.ICE_FISHING)),
    ("cultural_heritage", QueryFamily.CULTURAL_HERITAGE, "osm",
     (Category.WAR_MEMORIALS, Category.PEACE_MONUMENTS, Category.ARCHAEOLOGICAL,
      Category.CHURCHES, Category.PROTECTED_BUILDINGS, Category.INDUSTRIAL_HERITAGE)),
    ("heritage_sites", QueryFamily.CULTURAL_HERITAGE, "riksantikvaren",
     (Category.ARCHAEOLOGICAL, Category.WAR_MEMORIALS, Category.PROTECTED_BUILDINGS)),
    ("services", QueryFamily.SERVICE_INFRASTRUCTURE, "osm",
     (Category.PARKING, Category.TOILETS, Category.DRINKING_WATER, Category.REST_AREAS)),
    ("recreation_services", QueryFamily.SERVICE_INFRASTRUCTURE, "osm",
     (Category.INFORMATION_BOARDS, Category.FIRE_PLACES)),
    ("emergency_shelters", QueryFamily.SERVICE_INFRASTRUCTURE, "wfs",
     (Category.EMERGENCY_SHELTERS,)),
    ("transport", QueryFamily.TRANSPORT, "osm",
     (Category.PUBLIC_TRANSPORT, Category.TRAIN_STATIONS)),
    ("cable_cars", QueryFamily.TRANSPORT, "osm", (Category.CABLE_CARS,)),
    ("specialized_services", QueryFamily.SPECIALIZED, "osm",
     (Category.MOUNTAIN_SERVICE, Category.ACCESSIBLE_SITES)),
]


def _build_routes() -> Tuple[Dict[str, SourceQuery], Dict[Category, Tuple[SourceQuery, ...]]]:
    queries: Dict[str, SourceQuery] = {}
    by_category: Dict[Category, List[SourceQuery]] = {}
    for name, family, source, members in _QUERY_TABLE:
        filters: List[TagFilter] = []
        for category in members:
            for tf in CATEGORY_TAGS[category]:
                if tf not in filters:
                    filters.append(tf)
        query = SourceQuery(name=name, family=family, source=source, tag_filters=tuple(filters))
        queries[name] = query
        for category in members:
            by_category.setdefault(category, []).append(query)
    return queries, {c: tuple(qs) for c, qs in by_category.items()}


SOURCE_QUERIES, _ROUTES = _build_routes()


def coerce_category(value) -> Category:
    """Return value as a Category.

    Raises:
        UnknownCategoryError: If value is not a member of the enum
    """
    if isinstance(value, Category):
        return value
    try:
        return Category(value)
    except ValueError:
        raise UnknownCategoryError(value)


def category_matches(raw: "RawRecord", category: Category) -> bool:
    """True if a record of a shared query belongs to category."""
    filters = CATEGORY_TAGS[category]
    if not filters:
        return True
    return any(tf.matches(raw.tags) for tf in filters)


def parse_categories(values: Iterable[str]) -> List[Category]:
    """Parse category strings (comma-separated allowed), skipping unknown and repeated values."""
    out: List[Category] = []
    for raw in values:
        for part in str(raw).split(","):
            part = part.strip().lower()
            if not part:
                continue
            try:
                category = Category(part)
            except ValueError:
                logger.debug(f"Ignoring unknown category: {part}")
                continue
            if category not in out:
                out.append(category)
    return out


class CategoryRouter:
    """Maps a category to its source queries and its normalization rule."""

    def __init__(self, rules: Optional[Dict[Category, "NormalizationRule"]] = None):
        if rules is None:
            from trakke.normalize import RULES
            rules = RULES
        self._rules = rules

    def route(self, category) -> CategoryRoute:
        """Route a category.

        Raises:
            UnknownCategoryError: If category is not a member of Category
        """
        category = coerce_category(category)
        return CategoryRoute(
            category=category,
            queries=_ROUTES[category],
            rule=self._rules[category],
        )

    def matches(self, raw: "RawRecord", category: Category) -> bool:
        return category_matches(raw, category)

    def describe(self) -> List[Dict[str, str]]:
        """Category listing for the HTTP layer."""
        return [
            {
                "id": c.value,
                "label": CATEGORY_LABELS[c],
                "family": _ROUTES[c][0].family.value,
                "tier": priority_tier(c).value,
                "queries": ",".join(q.name for q in _ROUTES[c]),
            }
            for c in Category
        ]
