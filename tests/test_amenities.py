"""Tests for amenities.py: resolution-scoped cell joins and nearest selection."""

import pytest

from amenities import amenities_near, amenity_counts_for, empty_counts, has_any, summarize
from conftest import SF_CENTER, make_listing
from models import AmenityPoint, AMENITY_CATEGORIES
from spatial_index import Resolution, TravelMode, cell_id, haversine_meters


def _nearest(summary, category):
    return next((n for n in summary.nearest_per_category if n.point.category == category), None)


def _add(store, source_id, category, lat, lng, name=None):
    store.add_amenities([{
        "source_id": source_id, "category": category, "lat": lat, "lng": lng,
        "name": name or source_id,
    }])


class TestSummarize:
    def _point(self, pid, category, lat, lng):
        return AmenityPoint(id=pid, category=category, lat=lat, lng=lng, source_id=str(pid))

    def test_nearest_and_counts(self, store):
        listing = make_listing(store)
        lat, lng = SF_CENTER
        points = [
            self._point(1, "park", lat + 0.002, lng),
            self._point(2, "park", lat + 0.001, lng),
            self._point(3, "cafe", lat, lng + 0.001),
        ]
        summary = summarize(listing, points)
        assert summary.counts["park"] == 2
        assert summary.counts["cafe"] == 1
        assert summary.counts["gym"] == 0
        assert _nearest(summary, "park").point.id == 2
        assert _nearest(summary, "gym") is None

    def test_first_point_wins_exact_tie(self, store):
        listing = make_listing(store)
        lat, lng = SF_CENTER
        points = [
            self._point(7, "park", lat + 0.001, lng),
            self._point(3, "park", lat + 0.001, lng),
        ]
        assert _nearest(summarize(listing, points), "park").point.id == 7

    def test_nearest_list_follows_category_order(self, store):
        listing = make_listing(store)
        lat, lng = SF_CENTER
        points = [self._point(i, c, lat, lng) for i, c in enumerate(reversed(AMENITY_CATEGORIES))]
        ordered = [n.point.category for n in summarize(listing, points).nearest_per_category]
        assert ordered == list(AMENITY_CATEGORIES)

    def test_nearest_is_monotonic_when_adding_points(self, store):
        """Adding a point can only keep or shrink the nearest distance."""
        listing = make_listing(store)
        lat, lng = SF_CENTER
        offsets = [0.003, 0.001, 0.004, 0.0005, 0.002]
        points = []
        previous = None
        for i, off in enumerate(offsets):
            points.append(self._point(i, "grocery", lat + off, lng))
            distance = _nearest(summarize(listing, points), "grocery").distance_meters
            if previous is not None:
                assert distance <= previous
            previous = distance

    def test_distance_matches_haversine(self, store):
        listing = make_listing(store)
        point = self._point(1, "gym", SF_CENTER[0] + 0.002, SF_CENTER[1])
        nearest = _nearest(summarize(listing, [point]), "gym")
        assert nearest.distance_meters == pytest.approx(haversine_meters(SF_CENTER, (point.lat, point.lng)))


class TestAmenitiesNear:
    def test_same_cell_amenity_is_found_on_walking(self, store):
        """A park 50 m away in the same resolution-7 cell is the nearest park."""
        listing = make_listing(store)
        lat, lng = SF_CENTER
        _add(store, "osm:node/1", "park", lat + 0.00045, lng, name="Dolores Park")

        summary = amenities_near(store, listing, TravelMode.WALKING)
        assert summary.resolution == 7
        assert summary.cell_id == cell_id(lat, lng, 7)
        assert summary.counts["park"] == 1
        nearest = _nearest(summary, "park")
        assert nearest.point.name == "Dolores Park"
        assert nearest.distance_meters == pytest.approx(50, abs=2)

    def test_transit_uses_walking_resolution(self, store):
        listing = make_listing(store)
        summary = amenities_near(store, listing, TravelMode.TRANSIT)
        assert summary.resolution == Resolution.FINE

    def test_join_is_scoped_to_the_mode_resolution(self, store):
        """Walking sees only the listing's r7 cell; driving sees exactly its r5 cell."""
        listing = make_listing(store)
        lat, lng = SF_CENTER
        candidates = [
            ("near", lat + 0.001, lng),
            ("3km", lat + 0.027, lng),
            ("10km", lat, lng + 0.11),
            ("60km", lat + 0.55, lng),
        ]
        for name, plat, plng in candidates:
            _add(store, f"osm:node/{name}", "cafe", plat, plng, name=name)

        walking = amenities_near(store, listing, TravelMode.WALKING)
        expected_walk = sum(1 for _, a, b in candidates if cell_id(a, b, 7) == cell_id(lat, lng, 7))
        assert walking.counts["cafe"] == expected_walk
        assert _nearest(walking, "cafe").point.name == "near"

        driving = amenities_near(store, listing, TravelMode.DRIVING)
        expected_drive = sum(1 for _, a, b in candidates if cell_id(a, b, 5) == cell_id(lat, lng, 5))
        assert driving.counts["cafe"] == expected_drive
        assert driving.resolution == 5
        # 3 km is outside any resolution-7 cell around the center.
        assert expected_walk < 4

    def test_missing_cell_gives_empty_summary(self, store):
        listing = make_listing(store)
        listing.cells = {}
        summary = amenities_near(store, listing, TravelMode.WALKING)
        assert summary.counts == empty_counts()
        assert summary.nearest_per_category == []
        assert summary.cell_id is None

    def test_to_dict(self, store):
        listing = make_listing(store)
        _add(store, "x", "pharmacy", *SF_CENTER)
        data = amenities_near(store, listing, TravelMode.WALKING).to_dict()
        assert data["counts"]["pharmacy"] == 1
        assert data["nearestPerCategory"][0]["type"] == "pharmacy"
        assert data["nearestPerCategory"][0]["distanceMeters"] == 0


class TestBulkCounts:
    def test_counts_for_many_listings(self, store):
        here = make_listing(store)
        far = make_listing(store, lat=40.7128, lng=-74.0060)
        _add(store, "p", "park", *SF_CENTER)
        _add(store, "g", "gym", 40.7128, -74.0060)

        counts = amenity_counts_for(store, [here, far], TravelMode.WALKING)
        assert counts[here.id]["park"] == 1
        assert counts[here.id]["gym"] == 0
        assert counts[far.id]["gym"] == 1
        assert set(counts[far.id]) == set(AMENITY_CATEGORIES)

    def test_has_any(self):
        counts = empty_counts()
        counts["park"] = 2
        assert has_any(counts, ["gym", "park"])
        assert not has_any(counts, ["gym"])
        assert not has_any(counts, [])
