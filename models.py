"""
SQLite persistence for listings and the amenity catalog.

No ORM, just raw sqlite3. Every listing and amenity row carries one H3 cell
column per supported resolution so proximity lookups are equality joins on an
indexed column. Cell columns are derived from the coordinates on every write
that touches them.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from errors import ValidationError
from spatial_index import (
    Resolution,
    cell_ids,
    is_valid_coordinate,
)

logger = logging.getLogger(__name__)

CELL_COLUMNS: Dict[Resolution, str] = {
    Resolution.FINE: "cell_r7",
    Resolution.MEDIUM: "cell_r6",
    Resolution.COARSE: "cell_r5",
}

VIEWPORT_LIMIT = 100

PROPERTY_TYPES = ("apartment", "house")
LISTING_TYPES = ("rent", "sale")


class AmenityCategory(str, Enum):
    PARK = "park"
    GROCERY = "grocery"
    CAFE = "cafe"
    RESTAURANT = "restaurant"
    TRANSIT_STATION = "transit_station"
    GYM = "gym"
    PHARMACY = "pharmacy"
    COMMUNITY_CENTER = "community_center"


AMENITY_CATEGORIES: Tuple[str, ...] = tuple(c.value for c in AmenityCategory)


# =============================================================================
# Records
# =============================================================================

@dataclass
class Listing:
    id: int
    lat: float
    lng: float
    price: float
    bedrooms: Optional[int] = None
    bathrooms: Optional[float] = None
    property_type: Optional[str] = None
    listing_type: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    sq_ft: Optional[int] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    cells: Dict[Resolution, Optional[str]] = field(default_factory=dict)

    def cell_at(self, resolution: Resolution) -> Optional[str]:
        return self.cells.get(Resolution(resolution))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "lat": self.lat,
            "lng": self.lng,
            "price": self.price,
            "bedrooms": self.bedrooms,
            "bathrooms": self.bathrooms,
            "sqFt": self.sq_ft,
            "propertyType": self.property_type,
            "saleType": self.listing_type,
            "description": self.description,
            "imageUrl": self.image_url,
        }


@dataclass(frozen=True)
class AmenityPoint:
    id: int
    category: str
    lat: float
    lng: float
    source_id: str
    name: Optional[str] = None
    address: Optional[str] = None
    cells: Dict[Resolution, Optional[str]] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.category,
            "address": self.address,
            "lat": self.lat,
            "lng": self.lng,
        }


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        if not (is_valid_coordinate(self.north, self.east) and is_valid_coordinate(self.south, self.west)):
            raise ValidationError("Bounds must be valid latitude/longitude values")
        if self.south > self.north:
            raise ValidationError("Bounds south must not exceed north")

    @classmethod
    def covering(cls, listings: Sequence[Listing], buffer_deg: float = 0.0) -> "Bounds":
        """Smallest box containing every listing, grown by *buffer_deg*.

        Latitudes are clamped. When the listings sit on both sides of the
        antimeridian and the narrower box crosses it, the result has
        west > east.
        """
        lats = [l.lat for l in listings]
        lngs = sorted(l.lng for l in listings)
        north = min(90.0, max(lats) + buffer_deg)
        south = max(-90.0, min(lats) - buffer_deg)

        # Widest empty arc between neighbouring longitudes; the box is its complement.
        wrap_gap = lngs[0] + 360.0 - lngs[-1]
        widest, after = max(
            [(wrap_gap, 0)] + [(lngs[i + 1] - lngs[i], i + 1) for i in range(len(lngs) - 1)]
        )
        if after == 0 or widest <= wrap_gap:
            return cls(
                north=north,
                south=south,
                east=min(180.0, lngs[-1] + buffer_deg),
                west=max(-180.0, lngs[0] - buffer_deg),
            )

        west = lngs[after] - buffer_deg
        east = lngs[after - 1] + buffer_deg
        if east > 180.0:
            east -= 360.0
        if west < -180.0:
            west += 360.0
        return cls(north=north, south=south, east=east, west=west)


@dataclass(frozen=True)
class ListingFilter:
    """Typed listing filter. Every field is optional; None means unconstrained."""
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[int] = None
    max_bedrooms: Optional[int] = None
    min_bathrooms: Optional[float] = None
    max_bathrooms: Optional[float] = None
    property_type: Optional[str] = None
    listing_type: Optional[str] = None

    def merged_with(self, override: "ListingFilter") -> "ListingFilter":
        """Fields set on *override* win; unset fields fall back to self."""
        values = {}
        for name in self.__dataclass_fields__:
            theirs = getattr(override, name)
            values[name] = theirs if theirs is not None else getattr(self, name)
        return ListingFilter(**values)


def build_filter_clause(
    filters: ListingFilter,
    bounds: Optional[Bounds] = None,
) -> Tuple[str, List]:
    """Translate a ListingFilter (and optional bounds) into a WHERE clause.

    Returns (sql, params). The sql always starts with "WHERE" and uses only
    ``?`` placeholders; no caller-supplied value is ever spliced into the text.
    """
    clauses = ["1=1"]
    params: List = []

    if bounds is not None:
        clauses.append("lat BETWEEN ? AND ?")
        params.extend([bounds.south, bounds.north])
        if bounds.west <= bounds.east:
            clauses.append("lng BETWEEN ? AND ?")
            params.extend([bounds.west, bounds.east])
        else:
            # Viewport crosses the antimeridian.
            clauses.append("(lng >= ? OR lng <= ?)")
            params.extend([bounds.west, bounds.east])

    comparisons = (
        ("price", ">=", filters.min_price),
        ("price", "<=", filters.max_price),
        ("bedrooms", ">=", filters.min_bedrooms),
        ("bedrooms", "<=", filters.max_bedrooms),
        ("bathrooms", ">=", filters.min_bathrooms),
        ("bathrooms", "<=", filters.max_bathrooms),
        ("property_type", "=", filters.property_type),
        ("listing_type", "=", filters.listing_type),
    )
    for column, op, value in comparisons:
        if value is not None:
            clauses.append(f"{column} {op} ?")
            params.append(value)

    return "WHERE " + " AND ".join(clauses), params


# =============================================================================
# Store
# =============================================================================

_LISTING_COLUMNS = (
    "id, name, address, lat, lng, price, bedrooms, bathrooms, sq_ft, "
    "property_type, listing_type, description, image_url, "
    "cell_r7, cell_r6, cell_r5"
)

_AMENITY_COLUMNS = (
    "id, name, category, address, lat, lng, source_id, cell_r7, cell_r6, cell_r5"
)


def _cells_from_row(row) -> Dict[Resolution, Optional[str]]:
    return {res: row[col] for res, col in CELL_COLUMNS.items()}


def _row_to_listing(row) -> Listing:
    return Listing(
        id=row["id"],
        name=row["name"],
        address=row["address"],
        lat=row["lat"],
        lng=row["lng"],
        price=row["price"],
        bedrooms=row["bedrooms"],
        bathrooms=row["bathrooms"],
        sq_ft=row["sq_ft"],
        property_type=row["property_type"],
        listing_type=row["listing_type"],
        description=row["description"],
        image_url=row["image_url"],
        cells=_cells_from_row(row),
    )


def _row_to_amenity(row) -> AmenityPoint:
    return AmenityPoint(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        address=row["address"],
        lat=row["lat"],
        lng=row["lng"],
        source_id=row["source_id"],
        cells=_cells_from_row(row),
    )


def _cell_values(lat: float, lng: float) -> List[str]:
    cells = cell_ids(lat, lng)
    return [cells[res] for res in CELL_COLUMNS]


class ListingStore:
    """Listing and amenity persistence backed by one SQLite file.

    Usage:
        store = ListingStore("dwelligence.db")
        store.init_db()
        listing = store.add_listing({"lat": 37.77, "lng": -122.42, "price": 2400})
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        """Get a sqlite3 connection with WAL mode for concurrent reads."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self):
        """Create tables if they don't exist. Safe to call on every startup."""
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS listings (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    name          TEXT,
                    address       TEXT,
                    lat           REAL NOT NULL,
                    lng           REAL NOT NULL,
                    price         REAL NOT NULL,
                    bedrooms      INTEGER,
                    bathrooms     REAL,
                    sq_ft         INTEGER,
                    property_type TEXT,
                    listing_type  TEXT,
                    description   TEXT,
                    image_url     TEXT,
                    cell_r7       TEXT,
                    cell_r6       TEXT,
                    cell_r5       TEXT,
                    created_at    TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_listings_latlng ON listings(lat, lng);
                CREATE INDEX IF NOT EXISTS idx_listings_r7 ON listings(cell_r7);
                CREATE INDEX IF NOT EXISTS idx_listings_r6 ON listings(cell_r6);
                CREATE INDEX IF NOT EXISTS idx_listings_r5 ON listings(cell_r5);

                CREATE TABLE IF NOT EXISTS amenities (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    name       TEXT,
                    category   TEXT NOT NULL,
                    address    TEXT,
                    lat        REAL NOT NULL,
                    lng        REAL NOT NULL,
                    cell_r7    TEXT NOT NULL,
                    cell_r6    TEXT NOT NULL,
                    cell_r5    TEXT NOT NULL,
                    source_id  TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_amenities_r7 ON amenities(cell_r7);
                CREATE INDEX IF NOT EXISTS idx_amenities_r6 ON amenities(cell_r6);
                CREATE INDEX IF NOT EXISTS idx_amenities_r5 ON amenities(cell_r5);
            """)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def add_listing(self, data: dict) -> Listing:
        """Insert a listing, deriving its cell ids. Returns the stored row.

        Raises ValidationError for missing price or out-of-range coordinates.
        """
        lat, lng = data.get("lat"), data.get("lng")
        if not is_valid_coordinate(lat, lng):
            raise ValidationError("Listing requires valid lat/lng")
        if data.get("price") is None:
            raise ValidationError("Listing requires a price")
        lat, lng = float(lat), float(lng)
        now = datetime.now(timezone.utc).isoformat()

        conn = self._connect()
        try:
            cur = conn.execute(
                """INSERT INTO listings
                   (name, address, lat, lng, price, bedrooms, bathrooms, sq_ft,
                    property_type, listing_type, description, image_url,
                    cell_r7, cell_r6, cell_r5, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    data.get("name"),
                    data.get("address"),
                    lat,
                    lng,
                    float(data["price"]),
                    data.get("bedrooms"),
                    data.get("bathrooms"),
                    data.get("sq_ft"),
                    data.get("property_type"),
                    data.get("listing_type"),
                    data.get("description"),
                    data.get("image_url"),
                    *_cell_values(lat, lng),
                    now,
                ),
            )
            conn.commit()
            listing_id = cur.lastrowid
        finally:
            conn.close()
        return self.get_listing(listing_id)

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        """Load one listing, or None if the id is unknown."""
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_LISTING_COLUMNS} FROM listings WHERE id = ?", (listing_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_listing(row) if row else None

    def get_listings_by_ids(self, listing_ids: Iterable[int]) -> Dict[int, Listing]:
        ids = list(dict.fromkeys(listing_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {_LISTING_COLUMNS} FROM listings WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        finally:
            conn.close()
        return {row["id"]: _row_to_listing(row) for row in rows}

    def search_listings(
        self,
        filters: Optional[ListingFilter] = None,
        bounds: Optional[Bounds] = None,
        limit: Optional[int] = None,
    ) -> List[Listing]:
        """Listings matching *filters* (and *bounds*), newest first."""
        where, params = build_filter_clause(filters or ListingFilter(), bounds)
        sql = f"SELECT {_LISTING_COLUMNS} FROM listings {where} ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_listing(row) for row in rows]

    def update_listing_location(self, listing_id: int, lat: float, lng: float) -> bool:
        """Move a listing and recompute its cells. Returns False if unknown."""
        if not is_valid_coordinate(lat, lng):
            raise ValidationError("Listing requires valid lat/lng")
        lat, lng = float(lat), float(lng)
        conn = self._connect()
        try:
            cur = conn.execute(
                """UPDATE listings
                   SET lat = ?, lng = ?, cell_r7 = ?, cell_r6 = ?, cell_r5 = ?
                   WHERE id = ?""",
                (lat, lng, *_cell_values(lat, lng), listing_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def backfill_cells(self) -> int:
        """Recompute cell columns for every listing. Returns rows updated."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id, lat, lng FROM listings").fetchall()
            for row in rows:
                conn.execute(
                    "UPDATE listings SET cell_r7 = ?, cell_r6 = ?, cell_r5 = ? WHERE id = ?",
                    (*_cell_values(row["lat"], row["lng"]), row["id"]),
                )
            conn.commit()
        finally:
            conn.close()
        logger.info("Recomputed cells for %d listings", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Amenity catalog
    # ------------------------------------------------------------------

    def add_amenities(self, points: Iterable[dict]) -> int:
        """Insert amenity points, skipping source ids already stored.

        Each point is a dict with category, lat, lng, source_id and optional
        name/address. Returns the number of rows actually inserted.
        """
        now = datetime.now(timezone.utc).isoformat()
        inserted = 0
        conn = self._connect()
        try:
            for point in points:
                category = point.get("category")
                if category not in AMENITY_CATEGORIES:
                    logger.warning("Skipping amenity with unknown category %r", category)
                    continue
                if not point.get("source_id"):
                    logger.warning("Skipping amenity without source_id: %r", point.get("name"))
                    continue
                lat, lng = point.get("lat"), point.get("lng")
                if not is_valid_coordinate(lat, lng):
                    logger.warning("Skipping amenity %s with invalid coordinates", point["source_id"])
                    continue
                lat, lng = float(lat), float(lng)
                cur = conn.execute(
                    """INSERT OR IGNORE INTO amenities
                       (name, category, address, lat, lng,
                        cell_r7, cell_r6, cell_r5, source_id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        point.get("name"),
                        category,
                        point.get("address"),
                        lat,
                        lng,
                        *_cell_values(lat, lng),
                        str(point["source_id"]),
                        now,
                    ),
                )
                inserted += cur.rowcount
            conn.commit()
        finally:
            conn.close()
        return inserted

    def amenities_in_cell(self, resolution: Resolution, cell: str) -> List[AmenityPoint]:
        """Every amenity whose cell at *resolution* equals *cell*, in insertion order."""
        column = CELL_COLUMNS[Resolution(resolution)]
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {_AMENITY_COLUMNS} FROM amenities WHERE {column} = ? ORDER BY id",
                (cell,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_amenity(row) for row in rows]

    def count_amenities_by_cell(
        self,
        resolution: Resolution,
        cells: Iterable[str],
    ) -> Dict[str, Dict[str, int]]:
        """Per-cell, per-category amenity counts in one grouped query."""
        column = CELL_COLUMNS[Resolution(resolution)]
        wanted = [c for c in dict.fromkeys(cells) if c]
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""SELECT {column} AS cell, category, COUNT(*) AS n
                    FROM amenities
                    WHERE {column} IN ({placeholders})
                    GROUP BY {column}, category""",
                wanted,
            ).fetchall()
        finally:
            conn.close()
        counts: Dict[str, Dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["cell"], {})[row["category"]] = row["n"]
        return counts
