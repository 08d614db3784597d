"""
Amenity aggregation over the H3 grid.

A listing "has" an amenity when both sit in the same cell at the resolution
tied to the travel mode. This is an equality join on precomputed cell
columns, not a radius search: reach is hexagon-shaped and approximate.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from models import AMENITY_CATEGORIES, AmenityPoint, Listing, ListingStore
from spatial_index import TravelMode, haversine_meters, resolution_for_mode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NearbyAmenity:
    point: AmenityPoint
    distance_meters: float

    def to_dict(self) -> dict:
        data = self.point.to_dict()
        data["distanceMeters"] = round(self.distance_meters, 1)
        return data


@dataclass
class AmenitySummary:
    """Per-category counts plus the nearest point of each present category."""
    counts: Dict[str, int] = field(default_factory=dict)
    nearest_per_category: List[NearbyAmenity] = field(default_factory=list)
    cell_id: Optional[str] = None
    resolution: Optional[int] = None

    @classmethod
    def empty(cls, resolution: Optional[int] = None) -> "AmenitySummary":
        return cls(counts=empty_counts(), resolution=resolution)

    def to_dict(self) -> dict:
        return {
            "cellId": self.cell_id,
            "resolution": self.resolution,
            "counts": dict(self.counts),
            "nearestPerCategory": [n.to_dict() for n in self.nearest_per_category],
        }


def empty_counts() -> Dict[str, int]:
    return {category: 0 for category in AMENITY_CATEGORIES}


def has_any(counts: Dict[str, int], categories: Iterable[str]) -> bool:
    """True if at least one of *categories* has a nonzero count."""
    return any(counts.get(category, 0) > 0 for category in categories)


def summarize(listing: Listing, points: Sequence[AmenityPoint]) -> AmenitySummary:
    """Count *points* by category and pick the nearest of each.

    *points* must be in insertion order; on an exact distance tie the first
    point wins.
    """
    counts = empty_counts()
    best: Dict[str, NearbyAmenity] = {}
    origin = (listing.lat, listing.lng)

    for point in points:
        if point.category not in counts:
            logger.warning("Amenity %s has unknown category %r", point.id, point.category)
            continue
        counts[point.category] += 1
        distance = haversine_meters(origin, (point.lat, point.lng))
        current = best.get(point.category)
        if current is None or distance < current.distance_meters:
            best[point.category] = NearbyAmenity(point=point, distance_meters=distance)

    nearest = [best[category] for category in AMENITY_CATEGORIES if category in best]
    return AmenitySummary(counts=counts, nearest_per_category=nearest)


def amenities_near(
    store: ListingStore,
    listing: Listing,
    travel_mode: TravelMode,
) -> AmenitySummary:
    """Amenities sharing the listing's cell at the travel mode's resolution.

    A listing without a cell at that resolution gets an empty summary.
    """
    resolution = resolution_for_mode(travel_mode)
    cell = listing.cell_at(resolution)
    if not cell:
        logger.info(
            "Listing %s has no cell at resolution %d; returning empty amenities",
            listing.id, resolution,
        )
        return AmenitySummary.empty(resolution=int(resolution))

    summary = summarize(listing, store.amenities_in_cell(resolution, cell))
    summary.cell_id = cell
    summary.resolution = int(resolution)
    return summary


def amenity_counts_for(
    store: ListingStore,
    listings: Sequence[Listing],
    travel_mode: TravelMode,
) -> Dict[int, Dict[str, int]]:
    """Category counts for many listings at once, keyed by listing id.

    One grouped query covers every distinct cell in *listings*.
    """
    resolution = resolution_for_mode(travel_mode)
    cells = [listing.cell_at(resolution) for listing in listings]
    by_cell = store.count_amenities_by_cell(resolution, [c for c in cells if c])

    result: Dict[int, Dict[str, int]] = {}
    for listing, cell in zip(listings, cells):
        counts = empty_counts()
        if cell:
            counts.update(by_cell.get(cell, {}))
        result[listing.id] = counts
    return result
