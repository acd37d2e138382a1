from __future__ import annotations

from typing import Mapping

from layerhop.common.constants import CONTINENT_NAMES, INSTANCE_CONTINENTS, ZONE_CONTINENTS
from layerhop.common.types import Continent


class ContinentClassifier:
    """Static zone -> layer pool lookup.

    Zone ids may be instance map ids (0, 1, 530) or UI map ids. Ids that are
    not in the table classify as ``Continent.UNKNOWN`` so the lookup is total.
    """

    def __init__(self, extra_zones: Mapping[int, Continent] | None = None) -> None:
        self._zones: dict[int, Continent] = dict(INSTANCE_CONTINENTS)
        self._zones.update(ZONE_CONTINENTS)
        if extra_zones:
            self._zones.update(extra_zones)

    def classify_zone(self, zone_id: int | None) -> Continent:
        if zone_id is None:
            return Continent.UNKNOWN
        try:
            key = int(zone_id)
        except (TypeError, ValueError):
            return Continent.UNKNOWN
        return self._zones.get(key, Continent.UNKNOWN)

    def classify_name(self, name: str | None) -> Continent | None:
        if not name:
            return None
        return CONTINENT_NAMES.get(" ".join(name.strip().lower().split()))

    @staticmethod
    def compatible(a: Continent | None, b: Continent | None) -> bool:
        """Two pools can share a layer unless both are known and differ."""
        if a is None or b is None:
            return True
        if a == Continent.UNKNOWN or b == Continent.UNKNOWN:
            return True
        return a == b

    @staticmethod
    def other(continent: Continent) -> Continent:
        if continent == Continent.OUTLAND:
            return Continent.AZEROTH
        if continent == Continent.AZEROTH:
            return Continent.OUTLAND
        return Continent.UNKNOWN
