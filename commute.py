"""
Batch commute lookups with a shared TTL cache.

One call to CommuteService.batch_commutes makes at most one upstream
Distance Matrix batch for all origins missing from the cache, whatever the
number of listings. Per-origin failures become per-listing error results; a
failure of the whole batch raises UpstreamUnavailable to the caller.

The cache is the only mutable state shared between requests. Keys that
another request is already fetching are reserved, and later requests wait
briefly for that fetch instead of issuing their own.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import UpstreamUnavailable
from models import Listing, ListingStore
from spatial_index import TravelMode

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600
DESTINATION_PRECISION = 5
# Upper bound on waiting for another request's in-flight fetch of the same key.
INFLIGHT_WAIT_SECONDS = 15.0

NOT_FOUND_TAG = "NOT_FOUND"
UPSTREAM_UNAVAILABLE_TAG = "UPSTREAM_UNAVAILABLE"

CacheKey = Tuple[int, str, str]


def commute_cache_key(listing_id: int, destination: Tuple[float, float], mode: TravelMode) -> CacheKey:
    """(listing id, destination rounded to 5 dp, mode)."""
    lat, lng = destination
    return (
        int(listing_id),
        f"{lat:.{DESTINATION_PRECISION}f},{lng:.{DESTINATION_PRECISION}f}",
        TravelMode(mode).value,
    )


@dataclass(frozen=True)
class CommuteRecord:
    listing_id: int
    mode: str
    duration_seconds: int
    distance_meters: int
    fetched_at: float
    duration_text: str = ""
    distance_text: str = ""


@dataclass(frozen=True)
class CommuteResult:
    """Either a record (success) or an error tag for one listing."""
    listing_id: int
    record: Optional[CommuteRecord] = None
    error_tag: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        if self.record is None:
            return {
                "propertyId": self.listing_id,
                "error": "Commute unavailable",
                "status": self.error_tag,
            }
        r = self.record
        return {
            "propertyId": self.listing_id,
            "duration": r.duration_seconds,
            "durationText": r.duration_text,
            "distance": r.distance_meters,
            "distanceText": r.distance_text,
            "mode": r.mode,
        }


class CommuteCache:
    """Thread-safe TTL cache of CommuteRecords with in-flight reservations.

    Entries expire *ttl_seconds* after being written, regardless of reads.
    *clock* returns seconds; inject a fake for deterministic TTL tests.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CommuteRecord] = {}
        self._inflight: Dict[CacheKey, threading.Event] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def _fresh(self, record: CommuteRecord) -> bool:
        return self._clock() - record.fetched_at < self.ttl_seconds

    def get(self, key: CacheKey) -> Optional[CommuteRecord]:
        with self._lock:
            record = self._entries.get(key)
            if record is None:
                return None
            if not self._fresh(record):
                del self._entries[key]
                return None
            return record

    def set(self, key: CacheKey, record: CommuteRecord):
        with self._lock:
            self._entries[key] = record

    def reserve(self, keys: Iterable[CacheKey]) -> Tuple[List[CacheKey], Dict[CacheKey, threading.Event]]:
        """Claim keys for fetching.

        Returns (claimed, pending): *claimed* keys are now owned by the caller
        and must be passed to release(); *pending* maps keys another caller
        owns to the event that fires when that fetch finishes.
        """
        claimed: List[CacheKey] = []
        pending: Dict[CacheKey, threading.Event] = {}
        with self._lock:
            for key in keys:
                event = self._inflight.get(key)
                if event is not None:
                    pending[key] = event
                else:
                    self._inflight[key] = threading.Event()
                    claimed.append(key)
        return claimed, pending

    def release(self, keys: Iterable[CacheKey]):
        with self._lock:
            for key in keys:
                event = self._inflight.pop(key, None)
                if event is not None:
                    event.set()

    def __len__(self):
        with self._lock:
            return len(self._entries)


class CommuteService:
    """Resolves commutes for many listings to one destination."""

    def __init__(
        self,
        store: ListingStore,
        maps,
        cache: Optional[CommuteCache] = None,
        inflight_wait_seconds: float = INFLIGHT_WAIT_SECONDS,
    ):
        self.store = store
        self.maps = maps
        self.cache = cache if cache is not None else CommuteCache()
        self.inflight_wait_seconds = inflight_wait_seconds

    def batch_commutes(
        self,
        listing_ids: Sequence[int],
        destination: Tuple[float, float],
        mode: TravelMode,
    ) -> List[CommuteResult]:
        """Commute results for *listing_ids*, in input order.

        Unknown ids get an error result tagged NOT_FOUND.
        Raises UpstreamUnavailable if the upstream batch call fails as a whole.
        """
        found = self.store.get_listings_by_ids(listing_ids)
        listings = [found[i] for i in listing_ids if i in found]
        by_id = {r.listing_id: r for r in self.commutes_for_listings(listings, destination, mode)}
        return [
            by_id.get(listing_id) or CommuteResult(listing_id=listing_id, error_tag=NOT_FOUND_TAG)
            for listing_id in listing_ids
        ]

    def commutes_for_listings(
        self,
        listings: Sequence[Listing],
        destination: Tuple[float, float],
        mode: TravelMode,
    ) -> List[CommuteResult]:
        mode = TravelMode(mode)
        results: Dict[int, CommuteResult] = {}
        missing: Dict[CacheKey, Listing] = {}

        for listing in listings:
            key = commute_cache_key(listing.id, destination, mode)
            record = self.cache.get(key)
            if record is not None:
                results[listing.id] = CommuteResult(listing_id=listing.id, record=record)
            else:
                missing[key] = listing

        if missing:
            claimed, pending = self.cache.reserve(missing)
            try:
                to_fetch = [missing[key] for key in claimed]
                for key, event in pending.items():
                    event.wait(self.inflight_wait_seconds)
                    record = self.cache.get(key)
                    if record is not None:
                        results[missing[key].id] = CommuteResult(listing_id=missing[key].id, record=record)
                    else:
                        # The other fetch failed or timed out; fetch it ourselves.
                        to_fetch.append(missing[key])
                if to_fetch:
                    results.update(self._fetch(to_fetch, destination, mode))
            finally:
                self.cache.release(claimed)

        logger.info(
            "Commutes: %d listings, %d cached, %d fetched, mode=%s",
            len(listings), len(listings) - len(missing), len(missing), mode.value,
        )
        return [results[listing.id] for listing in listings if listing.id in results]

    def _fetch(
        self,
        listings: Sequence[Listing],
        destination: Tuple[float, float],
        mode: TravelMode,
    ) -> Dict[int, CommuteResult]:
        """One upstream batch for *listings*; caches successes."""
        origins = [(listing.lat, listing.lng) for listing in listings]
        elements = self.maps.distance_matrix(origins, destination, mode.value)
        if len(elements) != len(listings):
            raise UpstreamUnavailable(
                f"Distance Matrix returned {len(elements)} elements for {len(listings)} origins",
                service="google_maps",
            )

        fetched_at = self.cache.now()
        results: Dict[int, CommuteResult] = {}
        for listing, element in zip(listings, elements):
            status = element.get("status", "UNKNOWN")
            if status != "OK":
                logger.info("Commute unavailable for listing %s: %s", listing.id, status)
                results[listing.id] = CommuteResult(listing_id=listing.id, error_tag=status)
                continue
            try:
                record = CommuteRecord(
                    listing_id=listing.id,
                    mode=mode.value,
                    duration_seconds=int(element["duration"]["value"]),
                    distance_meters=int(element["distance"]["value"]),
                    duration_text=element["duration"].get("text", ""),
                    distance_text=element["distance"].get("text", ""),
                    fetched_at=fetched_at,
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Malformed Distance Matrix element for listing %s: %r", listing.id, element)
                results[listing.id] = CommuteResult(listing_id=listing.id, error_tag="MALFORMED_ELEMENT")
                continue
            self.cache.set(commute_cache_key(listing.id, destination, mode), record)
            results[listing.id] = CommuteResult(listing_id=listing.id, record=record)
        return results
