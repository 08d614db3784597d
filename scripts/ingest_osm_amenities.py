#!/usr/bin/env python3
"""
Ingest OpenStreetMap amenities into the Dwelligence amenity catalog.

Data source: Overpass API (https://overpass-api.de/api/interpreter)
Format: Overpass JSON (`out center;` so ways carry a center point)

This script:
1. Computes the bounding box of every stored listing, plus a ~5 km buffer
2. Queries Overpass once per amenity category inside that box
3. Converts nodes (lat/lon) and ways (center) to amenity points
4. Inserts with INSERT OR IGNORE on source_id ("osm:<type>/<id>"), so
   re-running only adds new points

Cell ids at every resolution are computed by ListingStore.add_amenities.

Usage:
    python scripts/ingest_osm_amenities.py
    python scripts/ingest_osm_amenities.py --category park --category cafe
    python scripts/ingest_osm_amenities.py --db data/dwelligence.db --dry-run
"""

import argparse
import logging
import os
import sys
import time

import requests
from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import AMENITY_CATEGORIES, Bounds, ListingStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

OVERPASS_ENDPOINT = os.environ.get(
    "OVERPASS_BASE_URL", "https://overpass-api.de/api/interpreter"
)

BBOX_BUFFER_DEG = 0.05  # ~5 km
REQUEST_SPACING_SECONDS = 1.0

# OSM tag filters per amenity category.
CATEGORY_FILTERS = {
    "park": [
        'node["leisure"="park"]',
        'way["leisure"="park"]',
    ],
    "grocery": [
        'node["shop"~"supermarket|convenience|grocery"]',
        'way["shop"~"supermarket|convenience|grocery"]',
    ],
    "cafe": [
        'node["amenity"="cafe"]',
        'way["amenity"="cafe"]',
    ],
    "restaurant": [
        'node["amenity"="restaurant"]',
        'way["amenity"="restaurant"]',
    ],
    "transit_station": [
        'node["railway"~"station|subway_entrance"]',
        'node["highway"="bus_stop"]',
        'way["railway"~"station|subway_entrance"]',
    ],
    "gym": [
        'node["leisure"="fitness_centre"]',
        'way["leisure"="fitness_centre"]',
    ],
    "pharmacy": [
        'node["amenity"="pharmacy"]',
        'way["amenity"="pharmacy"]',
    ],
    "community_center": [
        'node["amenity"="community_centre"]',
        'way["amenity"="community_centre"]',
    ],
}


def build_query(category: str, bounds: Bounds) -> str:
    bbox = f"{bounds.south},{bounds.west},{bounds.north},{bounds.east}"
    body = "\n".join(f"  {f};" for f in CATEGORY_FILTERS[category])
    return f"[out:json][timeout:90][bbox:{bbox}];\n(\n{body}\n);\nout center;"


def fetch_elements(query: str) -> list:
    """POST one Overpass query and return its elements."""
    for attempt in range(3):
        try:
            resp = requests.post(OVERPASS_ENDPOINT, data={"data": query}, timeout=120)
            resp.raise_for_status()
            return resp.json().get("elements", [])
        except (requests.RequestException, ValueError) as e:
            if attempt < 2:
                wait = 5 * (attempt + 1)
                logger.warning(
                    "Overpass fetch failed (attempt %d): %s, retrying in %ds",
                    attempt + 1, e, wait,
                )
                time.sleep(wait)
            else:
                raise


def element_to_point(element: dict, category: str) -> dict | None:
    """Convert an Overpass element to an amenity point dict, or None if it has no location."""
    if "lat" in element and "lon" in element:
        lat, lng = element["lat"], element["lon"]
    elif element.get("center"):
        lat, lng = element["center"].get("lat"), element["center"].get("lon")
    else:
        return None
    if lat is None or lng is None:
        return None

    tags = element.get("tags") or {}
    street = tags.get("addr:street")
    number = tags.get("addr:housenumber")
    address = f"{number} {street}" if street and number else street

    return {
        "category": category,
        "name": tags.get("name") or f"Unnamed {category.replace('_', ' ')}",
        "address": address,
        "lat": lat,
        "lng": lng,
        "source_id": f"osm:{element.get('type', 'node')}/{element['id']}",
    }


def ingest(store: ListingStore, categories: list, dry_run: bool = False) -> dict:
    """Fetch and store amenities for *categories*. Returns {category: inserted}."""
    listings = store.search_listings()
    if not listings:
        logger.warning("No listings stored; nothing to search around.")
        return {}

    bounds = Bounds.covering(listings, buffer_deg=BBOX_BUFFER_DEG)
    logger.info(
        "Bounding box for %d listings: [%.3f, %.3f, %.3f, %.3f]",
        len(listings), bounds.south, bounds.west, bounds.north, bounds.east,
    )

    inserted = {}
    for i, category in enumerate(categories):
        if i:
            time.sleep(REQUEST_SPACING_SECONDS)
        elements = fetch_elements(build_query(category, bounds))
        points = [p for p in (element_to_point(e, category) for e in elements) if p]
        logger.info("  %s: %d elements, %d with coordinates", category, len(elements), len(points))
        if dry_run:
            inserted[category] = 0
            continue
        inserted[category] = store.add_amenities(points)
        logger.info("  %s: inserted %d new points", category, inserted[category])
    return inserted


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Ingest OSM amenities around stored listings")
    parser.add_argument("--db", default=os.environ.get("DWELLIGENCE_DB_PATH"),
                        help="SQLite path (default: $DWELLIGENCE_DB_PATH)")
    parser.add_argument("--category", action="append", choices=AMENITY_CATEGORIES,
                        help="Only fetch this category (repeatable)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Query Overpass but don't write")
    args = parser.parse_args()

    if not args.db:
        parser.error("--db or DWELLIGENCE_DB_PATH is required")

    store = ListingStore(args.db)
    store.init_db()
    result = ingest(store, args.category or list(AMENITY_CATEGORIES), dry_run=args.dry_run)
    logger.info("Done. Inserted %d amenities total.", sum(result.values()))


if __name__ == "__main__":
    main()
