"""
Admin-entered POIs held in memory.

The pipeline treats this store as a free source: no retry, no delay.
Persistence of admin records is handled elsewhere.
"""

from typing import Dict, Iterable, List, Protocol

from trakke.categories import Category, coerce_category
from trakke.models import POI


class AdminPOIStore(Protocol):
    def get_by_categories(self, categories: Iterable[Category]) -> List[POI]:
        ...


class InMemoryAdminStore:
    def __init__(self, pois: Iterable[POI] = ()):
        self._pois: Dict[str, POI] = {}
        for poi in pois:
            self.add(poi)

    def add(self, poi: POI) -> None:
        """Add or replace a POI. Invalid coordinates raise ValueError."""
        if not poi.has_valid_coordinates():
            raise ValueError(f"POI {poi.id} has invalid coordinates ({poi.lat}, {poi.lng})")
        self._pois[poi.id] = poi

    def remove(self, poi_id: str) -> bool:
        return self._pois.pop(poi_id, None) is not None

    def get_by_categories(self, categories: Iterable[Category]) -> List[POI]:
        wanted = {coerce_category(c) for c in categories}
        return [poi for poi in self._pois.values() if poi.category in wanted]

    def __len__(self) -> int:
        return len(self._pois)
