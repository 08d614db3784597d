"""Unit tests for models.py: listing store, amenity catalog, filter builder.

Covers: cell derivation on insert/update/backfill, filter semantics, bounds
(including the antimeridian), amenity dedupe by source id, grouped counts.
"""

import pytest

from conftest import SF_CENTER, make_listing
from errors import ValidationError
from models import (
    AMENITY_CATEGORIES,
    Bounds,
    ListingFilter,
    build_filter_clause,
)
from spatial_index import Resolution, cell_ids


# =========================================================================
# build_filter_clause
# =========================================================================

class TestBuildFilterClause:
    def test_empty_filter(self):
        sql, params = build_filter_clause(ListingFilter())
        assert sql == "WHERE 1=1"
        assert params == []

    def test_values_are_parameters_not_text(self):
        sql, params = build_filter_clause(ListingFilter(
            min_price=1000, max_price=3000, property_type="house'; DROP TABLE listings; --",
        ))
        assert "DROP" not in sql
        assert sql.count("?") == len(params) == 3
        assert params == [1000, 3000, "house'; DROP TABLE listings; --"]

    def test_bounds(self):
        sql, params = build_filter_clause(ListingFilter(), Bounds(north=38, south=37, east=-122, west=-123))
        assert "lat BETWEEN ? AND ?" in sql
        assert "lng BETWEEN ? AND ?" in sql
        assert params == [37, 38, -123, -122]

    def test_antimeridian_bounds(self):
        sql, params = build_filter_clause(ListingFilter(), Bounds(north=10, south=-10, east=-170, west=170))
        assert "(lng >= ? OR lng <= ?)" in sql
        assert params == [-10, 10, 170, -170]


class TestListingFilter:
    def test_override_wins(self):
        base = ListingFilter(min_price=1000, max_price=2000, property_type="house")
        merged = base.merged_with(ListingFilter(max_price=2500))
        assert merged.min_price == 1000
        assert merged.max_price == 2500
        assert merged.property_type == "house"

    def test_unset_override_keeps_base(self):
        base = ListingFilter(min_bedrooms=2)
        assert base.merged_with(ListingFilter()) == base


class TestBounds:
    def test_rejects_south_above_north(self):
        with pytest.raises(ValidationError):
            Bounds(north=37, south=38, east=-122, west=-123)

    def test_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            Bounds(north=95, south=38, east=-122, west=-123)

    def test_covering_adds_buffer_and_clamps(self, store):
        a = make_listing(store, lat=37.70, lng=-122.50)
        b = make_listing(store, lat=37.80, lng=-122.40)
        box = Bounds.covering([a, b], buffer_deg=0.01)
        assert box.south == pytest.approx(37.69)
        assert box.north == pytest.approx(37.81)
        assert box.west == pytest.approx(-122.51)
        assert box.east == pytest.approx(-122.39)

        polar = make_listing(store, lat=89.999, lng=179.999)
        clamped = Bounds.covering([polar], buffer_deg=1)
        assert clamped.north == 90.0
        assert clamped.east == 180.0

    def test_covering_wraps_across_antimeridian(self, store):
        fiji_east = make_listing(store, lat=-17.0, lng=179.5)
        fiji_west = make_listing(store, lat=-16.5, lng=-179.5)
        far_away = make_listing(store, lat=-16.8, lng=0.0)

        box = Bounds.covering([fiji_east, fiji_west], buffer_deg=0.1)
        assert box.west == pytest.approx(179.4)
        assert box.east == pytest.approx(-179.4)

        found = {l.id for l in store.search_listings(bounds=box)}
        assert found == {fiji_east.id, fiji_west.id}
        assert far_away.id not in found

    def test_covering_wrapped_box_keeps_buffer(self, store):
        a = make_listing(store, lat=0.0, lng=179.99)
        b = make_listing(store, lat=0.0, lng=-179.0)
        box = Bounds.covering([a, b], buffer_deg=0.05)
        assert box.west == pytest.approx(179.94)
        assert box.east == pytest.approx(-178.95)

    def test_covering_picks_the_narrower_box(self, store):
        a = make_listing(store, lat=0.0, lng=-170.0)
        b = make_listing(store, lat=0.0, lng=170.0)
        # 20 deg across the antimeridian beats 340 deg through Greenwich.
        wrapped = Bounds.covering([a, b])
        assert (wrapped.west, wrapped.east) == (pytest.approx(170.0), pytest.approx(-170.0))

        c = make_listing(store, lat=0.0, lng=-60.0)
        d = make_listing(store, lat=0.0, lng=60.0)
        plain = Bounds.covering([c, d])
        assert (plain.west, plain.east) == (pytest.approx(-60.0), pytest.approx(60.0))


# =========================================================================
# Listings
# =========================================================================

class TestListings:
    def test_add_listing_derives_cells(self, store):
        listing = make_listing(store, lat=37.7749, lng=-122.4194)
        assert listing.id > 0
        assert listing.cells == cell_ids(37.7749, -122.4194)

    def test_add_listing_requires_coordinates(self, store):
        with pytest.raises(ValidationError):
            store.add_listing({"lat": 123, "lng": 0, "price": 100})
        with pytest.raises(ValidationError):
            store.add_listing({"price": 100})

    def test_add_listing_requires_price(self, store):
        with pytest.raises(ValidationError):
            store.add_listing({"lat": 37.7, "lng": -122.4})

    def test_get_unknown_listing_is_none(self, store):
        assert store.get_listing(9999) is None

    def test_get_listings_by_ids_skips_unknown(self, store):
        a = make_listing(store)
        b = make_listing(store)
        found = store.get_listings_by_ids([b.id, 9999, a.id])
        assert set(found) == {a.id, b.id}

    def test_search_filters(self, store):
        cheap = make_listing(store, price=1500, bedrooms=1)
        mid = make_listing(store, price=2500, bedrooms=2, property_type="house")
        make_listing(store, price=4000, bedrooms=3, listing_type="sale")

        ids = [l.id for l in store.search_listings(ListingFilter(max_price=3000))]
        assert sorted(ids) == sorted([cheap.id, mid.id])

        ids = [l.id for l in store.search_listings(ListingFilter(property_type="house"))]
        assert ids == [mid.id]

        ids = [l.id for l in store.search_listings(ListingFilter(min_bedrooms=2, max_bedrooms=2))]
        assert ids == [mid.id]

    def test_search_newest_first(self, store):
        first = make_listing(store)
        second = make_listing(store)
        assert [l.id for l in store.search_listings()] == [second.id, first.id]

    def test_search_in_bounds_with_limit(self, store):
        inside = [make_listing(store, lat=37.77 + i * 0.001, lng=-122.42) for i in range(3)]
        make_listing(store, lat=40.71, lng=-74.00)
        box = Bounds(north=37.8, south=37.7, east=-122.3, west=-122.5)

        found = store.search_listings(bounds=box)
        assert {l.id for l in found} == {l.id for l in inside}
        assert len(store.search_listings(bounds=box, limit=2)) == 2

    def test_search_across_antimeridian(self, store):
        east = make_listing(store, lat=0.0, lng=179.5)
        west = make_listing(store, lat=0.0, lng=-179.5)
        make_listing(store, lat=0.0, lng=0.0)
        found = store.search_listings(bounds=Bounds(north=1, south=-1, east=-179, west=179))
        assert {l.id for l in found} == {east.id, west.id}

    def test_update_location_recomputes_cells(self, store):
        listing = make_listing(store, lat=37.7749, lng=-122.4194)
        assert store.update_listing_location(listing.id, 40.7128, -74.0060) is True
        moved = store.get_listing(listing.id)
        assert (moved.lat, moved.lng) == (40.7128, -74.0060)
        assert moved.cells == cell_ids(40.7128, -74.0060)

    def test_update_unknown_listing(self, store):
        assert store.update_listing_location(9999, 1.0, 1.0) is False

    def test_backfill_cells_repairs_rows(self, store):
        listing = make_listing(store)
        conn = store._connect()
        conn.execute("UPDATE listings SET cell_r7 = NULL, cell_r6 = 'stale', cell_r5 = NULL")
        conn.commit()
        conn.close()

        assert store.backfill_cells() == 1
        assert store.get_listing(listing.id).cells == cell_ids(listing.lat, listing.lng)

    def test_to_dict_shape(self, store):
        data = make_listing(store, sq_ft=850, image_url="http://img").to_dict()
        assert data["sqFt"] == 850
        assert data["imageUrl"] == "http://img"
        assert data["saleType"] == "rent"
        assert data["propertyType"] == "apartment"


# =========================================================================
# Amenity catalog
# =========================================================================

def _point(source_id, category="park", lat=None, lng=None, name=None):
    return {
        "source_id": source_id,
        "category": category,
        "lat": SF_CENTER[0] if lat is None else lat,
        "lng": SF_CENTER[1] if lng is None else lng,
        "name": name or source_id,
    }


class TestAmenities:
    def test_insert_is_idempotent_on_source_id(self, store):
        assert store.add_amenities([_point("osm:node/1"), _point("osm:node/2")]) == 2
        assert store.add_amenities([_point("osm:node/1"), _point("osm:node/3")]) == 1

    def test_skips_invalid_points(self, store):
        inserted = store.add_amenities([
            _point("a", category="casino"),
            {"category": "park", "lat": 1, "lng": 1},
            _point("c", lat=200),
            _point("d"),
        ])
        assert inserted == 1

    def test_amenities_in_cell_in_insertion_order(self, store):
        store.add_amenities([_point("b", name="B"), _point("a", name="A")])
        cell = cell_ids(*SF_CENTER)[Resolution.FINE]
        points = store.amenities_in_cell(Resolution.FINE, cell)
        assert [p.name for p in points] == ["B", "A"]
        assert points[0].cells[Resolution.FINE] == cell

    def test_count_by_cell(self, store):
        store.add_amenities([
            _point("p1", "park"), _point("p2", "park"), _point("c1", "cafe"),
            _point("far", "park", lat=40.7128, lng=-74.0060),
        ])
        cell = cell_ids(*SF_CENTER)[Resolution.FINE]
        far = cell_ids(40.7128, -74.0060)[Resolution.FINE]
        counts = store.count_amenities_by_cell(Resolution.FINE, [cell, far, cell])
        assert counts[cell] == {"park": 2, "cafe": 1}
        assert counts[far] == {"park": 1}

    def test_count_by_cell_empty_input(self, store):
        assert store.count_amenities_by_cell(Resolution.FINE, []) == {}

    def test_categories(self):
        assert len(AMENITY_CATEGORIES) == 8
        assert "transit_station" in AMENITY_CATEGORIES
