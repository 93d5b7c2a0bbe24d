"""
Normalization of raw source records into canonical POIs.

Name resolution order:
1. localized name tags, most specific locale first (name:nb, name:nn, name:no)
2. name, then name:en
3. the category's generated label (first matching rule in the table)
4. a location label such as "Campingplass ved Bykle"
5. the category's default label

Descriptions follow the same localized -> generic -> generated order.
Records without an id or usable coordinates are rejected and counted,
never raised.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging

from trakke.categories import Category, category_matches
from trakke.models import POI, RawRecord, is_valid_coordinate

logger = logging.getLogger(__name__)

Tags = Dict[str, str]


class ValidationRejection(Enum):
    """Per-record rejection reason. Counted, never raised."""
    MISSING_ID = "missing_id"
    MISSING_COORDINATES = "missing_coordinates"
    INVALID_COORDINATES = "invalid_coordinates"
    ZERO_SENTINEL = "zero_sentinel"


@dataclass
class NormalizationStats:
    accepted: int = 0
    rejected: Counter = field(default_factory=Counter)

    def record(self, reason: ValidationRejection) -> None:
        self.rejected[reason] += 1

    @property
    def total_rejected(self) -> int:
        return sum(self.rejected.values())

    def to_dict(self) -> Dict[str, int]:
        out = {"accepted": self.accepted}
        out.update({reason.value: n for reason, n in self.rejected.items()})
        return out


@dataclass(frozen=True)
class LabelRule:
    """(predicate, generator) pair; generator runs only when predicate holds."""
    predicate: Callable[[Tags], bool]
    generate: Callable[[Tags], str]


@dataclass(frozen=True)
class NormalizationRule:
    category: Category
    default_label: str
    names: Tuple[LabelRule, ...] = ()
    descriptions: Tuple[LabelRule, ...] = ()
    base_description: Optional[str] = None
    # False for sources whose records are not OpenStreetMap elements
    detail_parts: bool = True

    def generated_name(self, tags: Tags) -> Optional[str]:
        for rule in self.names:
            if rule.predicate(tags):
                return rule.generate(tags)
        return None

    def generated_description(self, tags: Tags) -> str:
        for rule in self.descriptions:
            if rule.predicate(tags):
                return rule.generate(tags)
        return self.base_description or f"{self.default_label} registrert i OpenStreetMap"


def tag_is(key: str, value: str) -> Callable[[Tags], bool]:
    return lambda tags: tags.get(key) == value


def has_tag(key: str) -> Callable[[Tags], bool]:
    return lambda tags: bool(tags.get(key))


def label(text: str) -> Callable[[Tags], str]:
    return lambda tags: text


def when(predicate: Callable[[Tags], bool], generate) -> LabelRule:
    if isinstance(generate, str):
        generate = label(generate)
    return LabelRule(predicate=predicate, generate=generate)


def _shelter_description(tags: Tags) -> str:
    parts = ["Offentlig tilfluktsrom"]
    if tags.get("romnr"):
        parts.append(f"Rom nr: {tags['romnr']}")
    if tags.get("plasser"):
        parts.append(f"Kapasitet: {tags['plasser']} personer")
    if tags.get("adresse"):
        parts.append(f"Adresse: {tags['adresse']}")
    return ". ".join(parts)


def _cave_description(tags: Tags) -> str:
    parts = ["Naturlig huleinngang"]
    if tags.get("cave") == "system":
        parts.append("Del av hulesystem")
    elif tags.get("cave") == "single":
        parts.append("Enkeltstående hule")
    length = tags.get("length")
    if length:
        try:
            meters = float(length)
        except ValueError:
            meters = None
        if meters is not None:
            parts.append(f"Lengde: {meters / 1000:.1f} km" if meters >= 1000 else f"Lengde: {length} meter")
    return ". ".join(parts)


_TOWER_TYPES = {
    "observation": "Observasjonstårn for utsikt",
    "watchtower": "Vakttårn for overvåking",
    "fire_observation": "Brannvakttårn",
}


def _heritage_description(tags: Tags) -> str:
    heritage = tags.get("heritage", "")
    if "unesco" in heritage:
        return "UNESCO-verdensarvsted"
    if "national" in heritage:
        return "Nasjonalt kulturminne"
    return "Verneverdig kulturminne"


def _rule(category: Category, default_label: str, names=(), descriptions=(), base=None, **kwargs):
    return NormalizationRule(
        category=category,
        default_label=default_label,
        names=tuple(names),
        descriptions=tuple(descriptions),
        base_description=base,
        **kwargs,
    )


_RULE_LIST = [
    # Accommodation
    _rule(Category.CAMPING_SITE, "Campingplass",
          names=[when(tag_is("tourism", "caravan_site"), "Bobilplass")],
          base="Campingplass for overnatting"),
    _rule(Category.TENT_AREA, "Teltplass", base="Område for telting"),
    _rule(Category.WILD_CAMPING, "Fri camping", base="Sted for fri camping etter allemannsretten"),
    _rule(Category.STAFFED_HUTS, "Betjent hytte", base="Betjent turisthytte med servering"),
    _rule(Category.SELF_SERVICE_HUTS, "Selvbetjent hytte", base="Selvbetjent hytte for overnatting"),
    _rule(Category.WILDERNESS_SHELTER, "Vindskjul",
          names=[when(tag_is("shelter_type", "lean_to"), "Gapahuk")],
          base="Enkelt ly for vær og vind"),
    # Outdoor activities
    _rule(Category.HIKING, "Fotturrute",
          names=[when(tag_is("route", "hiking"), "Tursti"),
                 when(tag_is("highway", "path"), "Sti")],
          base="Tursti for fotturer"),
    _rule(Category.MOUNTAIN_PEAKS, "Fjelltopp",
          names=[when(has_tag("ele"), lambda t: f"Fjelltopp ({t['ele']} m)")],
          base="Fjelltopp"),
    _rule(Category.VIEWPOINTS, "Utsiktspunkt",
          names=[when(tag_is("man_made", "tower"), "Utsiktstårn")],
          base="Utsiktspunkt med panoramautsikt"),
    _rule(Category.NATURE_GEMS, "Naturperle",
          names=[when(tag_is("waterway", "waterfall"), "Foss"),
                 when(tag_is("natural", "cave_entrance"), "Hule"),
                 when(tag_is("natural", "glacier"), "Bre"),
                 when(tag_is("natural", "hot_spring"), "Varm kilde"),
                 when(tag_is("natural", "geyser"), "Geysir"),
                 when(tag_is("natural", "arch"), "Naturlig bue")],
          base="Naturperle"),
    _rule(Category.CAVES, "Hule",
          names=[when(tag_is("cave_entrance", "yes"), "Huleinngang")],
          descriptions=[when(tag_is("natural", "cave_entrance"), _cave_description)],
          base="Hule"),
    _rule(Category.SKI_TRAILS, "Skiløype",
          names=[when(tag_is("piste:type", "nordic"), "Langrennsløype"),
                 when(tag_is("piste:type", "downhill"), "Alpinbakke"),
                 when(tag_is("piste:type", "skitour"), "Toppturrute")],
          base="Skiløype"),
    _rule(Category.OBSERVATION_TOWERS, "Observasjonstårn",
          names=[when(tag_is("tower:type", "observation"), "Observasjonstårn"),
                 when(tag_is("tower:type", "watchtower"), "Vakttårn"),
                 when(tag_is("tower:type", "fire_observation"), "Brannvakttårn"),
                 when(tag_is("tourism", "viewpoint"), "Utsiktstårn")],
          descriptions=[when(lambda t: t.get("tower:type") in _TOWER_TYPES,
                             lambda t: _TOWER_TYPES[t["tower:type"]])],
          base="Tårn"),
    # Water activities
    _rule(Category.SWIMMING, "Badeplass",
          names=[when(tag_is("leisure", "swimming_pool"), "Svømmebasseng"),
                 when(tag_is("natural", "beach"), "Badestrand")],
          base="Sted for bading"),
    _rule(Category.BEACH, "Strand", base="Strand"),
    _rule(Category.LAKES_RIVERS, "Vann",
          names=[when(tag_is("waterway", "river"), "Elv"),
                 when(tag_is("waterway", "stream"), "Bekk"),
                 when(tag_is("natural", "lake"), "Innsjø"),
                 when(tag_is("natural", "bay"), "Bukt")]),
    _rule(Category.FISHING_SPOTS, "Fiskeplass", base="Sted for fiske"),
    _rule(Category.CANOEING, "Padleplass",
          names=[when(tag_is("leisure", "slipway"), "Utsettingsrampe")],
          base="Sted for padling med kano eller kajakk"),
    _rule(Category.ICE_FISHING, "Isfiskeplass", base="Sted for isfiske vinterstid"),
    # Cultural heritage
    _rule(Category.WAR_MEMORIALS, "Krigsminne",
          names=[when(tag_is("historic", "fort"), "Fort"),
                 when(lambda t: t.get("military") == "bunker" and bool(t.get("bunker_type")),
                      lambda t: f"Bunker ({t['bunker_type']})"),
                 when(tag_is("military", "bunker"), "Bunker"),
                 when(tag_is("military", "trench"), "Skyttergraver"),
                 when(tag_is("memorial", "war_memorial"), "Krigsminne"),
                 when(tag_is("historic", "memorial"), "Minnested"),
                 when(tag_is("historic", "battlefield"), "Slagmark")],
          descriptions=[when(tag_is("military", "bunker"), "Militært forsvarsverk fra andre verdenskrig"),
                        when(tag_is("historic", "battlefield"), "Historisk slagmark")],
          base="Minnesmerke fra krigsperioden"),
    _rule(Category.PEACE_MONUMENTS, "Fredsmonument", base="Monument for fred"),
    _rule(Category.ARCHAEOLOGICAL, "Fornminne",
          names=[when(tag_is("historic", "ruins"), "Ruiner"),
                 when(tag_is("historic", "burial_mound"), "Gravhaug"),
                 when(tag_is("historic", "petroglyphs"), "Helleristninger"),
                 when(tag_is("historic", "stone_circle"), "Steinsirkel"),
                 when(tag_is("historic", "shieling"), "Seter")],
          base="Fornminne"),
    _rule(Category.CHURCHES, "Kirke",
          names=[when(tag_is("building", "chapel"), "Kapell")],
          base="Kirke eller religiøst sted"),
    _rule(Category.PROTECTED_BUILDINGS, "Verneverdig bygning",
          names=[when(tag_is("historic", "castle"), "Slott"),
                 when(tag_is("historic", "manor"), "Herregård")],
          descriptions=[when(has_tag("heritage"), _heritage_description)],
          base="Verneverdig bygning"),
    _rule(Category.INDUSTRIAL_HERITAGE, "Teknisk kulturminne",
          names=[when(tag_is("man_made", "mine"), "Gruve"),
                 when(tag_is("man_made", "quarry"), "Steinbrudd")],
          base="Teknisk og industrielt kulturminne"),
    # Services and infrastructure
    _rule(Category.PARKING, "Parkeringsplass",
          names=[when(tag_is("highway", "rest_area"), "Rasteplass")],
          base="Parkering"),
    _rule(Category.TOILETS, "Toalett", base="Offentlig toalett"),
    _rule(Category.DRINKING_WATER, "Drikkevann",
          names=[when(tag_is("natural", "spring"), "Kilde")],
          base="Drikkevann"),
    _rule(Category.REST_AREAS, "Rasteplass",
          names=[when(tag_is("amenity", "bench"), "Benk"),
                 when(tag_is("leisure", "picnic_table"), "Piknikbord")],
          base="Sted for hvile og rast"),
    _rule(Category.INFORMATION_BOARDS, "Informasjonstavle", base="Turinformasjon"),
    _rule(Category.FIRE_PLACES, "Bålplass",
          names=[when(tag_is("amenity", "bbq"), "Grillplass")],
          base="Tilrettelagt bålplass"),
    _rule(Category.EMERGENCY_SHELTERS, "Tilfluktsrom",
          names=[when(has_tag("adresse"), lambda t: f"Tilfluktsrom - {t['adresse']}"),
                 when(has_tag("romnr"), lambda t: f"Tilfluktsrom {t['romnr']}")],
          descriptions=[when(lambda t: True, _shelter_description)],
          detail_parts=False),
    # Transport
    _rule(Category.PUBLIC_TRANSPORT, "Holdeplass",
          names=[when(tag_is("highway", "bus_stop"), "Bussholdeplass"),
                 when(tag_is("railway", "tram_stop"), "Trikkeholdeplass"),
                 when(tag_is("amenity", "ferry_terminal"), "Fergekai")],
          base="Holdeplass for kollektivtransport"),
    _rule(Category.TRAIN_STATIONS, "Jernbanestasjon",
          names=[when(tag_is("railway", "halt"), "Jernbanestopp")],
          base="Jernbanestasjon"),
    _rule(Category.CABLE_CARS, "Taubane",
          names=[when(tag_is("aerialway", "gondola"), "Gondolbane"),
                 when(tag_is("aerialway", "chair_lift"), "Stolheis"),
                 when(tag_is("aerialway", "drag_lift"), "Skitrekk")],
          base="Taubane eller heis"),
    # Specialized
    _rule(Category.MOUNTAIN_SERVICE, "Serveringssted",
          names=[when(tag_is("tourism", "guest_house"), "Gjestehus")],
          base="Servering og overnatting"),
    _rule(Category.ACCESSIBLE_SITES, "Universelt utformet sted",
          base="Sted tilrettelagt for rullestolbrukere"),
]

RULES: Dict[Category, NormalizationRule] = {rule.category: rule for rule in _RULE_LIST}


def _detail_parts(tags: Tags) -> List[str]:
    parts = []
    if tags.get("ele"):
        parts.append(f"Høyde: {tags['ele']} meter")
    if tags.get("surface"):
        parts.append(f"Underlag: {tags['surface']}")
    if tags.get("sac_scale"):
        parts.append(f"Vanskelighetsgrad: {tags['sac_scale']}")
    if tags.get("fee") == "yes":
        parts.append("Avgift kreves")
    elif tags.get("fee") == "no":
        parts.append("Gratis tilgang")
    if tags.get("wheelchair") == "yes":
        parts.append("Tilgjengelig for rullestol")
    if tags.get("opening_hours"):
        parts.append(f"Åpningstider: {tags['opening_hours']}")
    access = tags.get("access")
    if access == "private":
        parts.append("Privat eiendom")
    elif access == "no":
        parts.append("Stengt for allmennheten")
    elif access == "permit":
        parts.append("Tilgang krever tillatelse")
    if tags.get("wikipedia"):
        parts.append(f"Mer informasjon: Wikipedia ({tags['wikipedia']})")
    return parts


def _first(tags: Tags, keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = tags.get(key)
        if value and value.strip():
            return value.strip()
    return None


class Normalizer:
    """Turns RawRecord + Category into a POI using the rule table."""

    def __init__(
        self,
        locales: Optional[Sequence[str]] = None,
        rules: Optional[Dict[Category, NormalizationRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if locales is None:
            from trakke.config import get_config
            locales = get_config().source_config.name_locales
        self.locales = list(locales)
        self.rules = rules if rules is not None else RULES
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._name_keys = [f"name:{loc}" for loc in self.locales] + ["name", "name:en"]
        self._description_keys = [f"description:{loc}" for loc in self.locales] + ["description"]
        self.stats = NormalizationStats()

    def matches(self, raw: RawRecord, category: Category) -> bool:
        return category_matches(raw, category)

    def resolve_name(self, tags: Tags, category: Category) -> str:
        name = _first(tags, self._name_keys)
        if name:
            return name
        rule = self.rules[category]
        generated = rule.generated_name(tags)
        if generated:
            return generated
        place = _first(tags, ("addr:city", "addr:place", "is_in"))
        if place:
            return f"{rule.default_label} ved {place}"
        return rule.default_label

    def resolve_description(self, tags: Tags, category: Category) -> str:
        description = _first(tags, self._description_keys)
        if description:
            return description
        rule = self.rules[category]
        parts = [rule.generated_description(tags)]
        if rule.detail_parts:
            parts.extend(_detail_parts(tags))
        return ". ".join(parts) + "."

    def normalize(
        self,
        raw: RawRecord,
        category: Category,
        source: str = "osm",
        stats: Optional[NormalizationStats] = None,
    ) -> Tuple[Optional[POI], bool]:
        """Normalize one record. Returns (None, False) for rejected records."""
        stats = stats if stats is not None else self.stats

        external_id = str(raw.external_id).strip() if raw.external_id is not None else ""
        if not external_id:
            stats.record(ValidationRejection.MISSING_ID)
            return None, False

        coords = raw.coordinates()
        if coords is None:
            stats.record(ValidationRejection.MISSING_COORDINATES)
            return None, False
        lat, lng = coords
        if lat == 0 and lng == 0:
            stats.record(ValidationRejection.ZERO_SENTINEL)
            return None, False
        if not is_valid_coordinate(lat, lng):
            stats.record(ValidationRejection.INVALID_COORDINATES)
            return None, False

        tags = {str(k): str(v) for k, v in (raw.tags or {}).items()}
        metadata = dict(tags)
        metadata["element_type"] = raw.kind

        poi = POI(
            id=POI.make_id(source, category, external_id),
            name=self.resolve_name(tags, category),
            description=self.resolve_description(tags, category),
            category=category,
            lat=float(lat),
            lng=float(lng),
            metadata=metadata,
            source=source,
            last_updated=self._clock(),
        )
        stats.accepted += 1
        return poi, True
