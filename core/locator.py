from typing import List, NamedTuple

from core import geo
from core.errors import ValidationError
from core.registry import AmbulanceRegistry
from models import AmbulanceRecord, GeoPoint


class LocatedAmbulance(NamedTuple):
    record: AmbulanceRecord
    distance_km: float


class AmbulanceLocator:
    """Ranks registered ambulances by distance from a requester."""

    def __init__(self, registry: AmbulanceRegistry):
        self.registry = registry

    def locate(self, requester_location: GeoPoint, radius_km: float) -> List[LocatedAmbulance]:
        """Ambulances within ``radius_km``, nearest first.

        Distances are recomputed here with the haversine formula so ordering
        does not depend on how the registry indexes records. Ties are broken by
        ascending ambulance id. An empty list means nothing is in range.
        """
        geo.validate_point(requester_location, "requester location")
        if radius_km is None or not radius_km >= 0:
            raise ValidationError("radius must be a non-negative number", {"radiusKm": "must be >= 0"})

        located = [
            LocatedAmbulance(record, geo.distance_between(requester_location, record.location))
            for record in self.registry.find_within_radius(requester_location, radius_km)
        ]
        located.sort(key=lambda item: (item.distance_km, item.record.id))
        return located
