"""Shared fixtures for the Dwelligence test suite.

Provides a temporary listing store, scripted fakes for the Google Maps and
Gemini clients, and a Flask test client wired to both.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file and satisfy required config BEFORE importing app
# (it loads settings and builds services at import time).
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["DWELLIGENCE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-maps-key-for-tests")
os.environ.setdefault("GEMINI_API_KEY", "fake-gemini-key-for-tests")
os.environ.pop("SENTRY_DSN", None)

from app import app, build_services, limiter, SETTINGS  # noqa: E402
from commute import CommuteCache  # noqa: E402
from errors import UpstreamUnavailable  # noqa: E402
from models import ListingStore  # noqa: E402
from spatial_index import cell_center, cell_id  # noqa: E402

# Center of a resolution-7 cell in San Francisco. Points within a few hundred
# meters of it share its walking-resolution cell.
SF_CENTER = cell_center(cell_id(37.7749, -122.4194, 7))


class FakeClock:
    """Injectable clock for CommuteCache TTL tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeLLM:
    """Scripted stand-in for GeminiClient.

    ``responses`` maps a purpose ("parse_query", "rank", "ask") to either a
    string or an exception instance to raise. Every call is recorded.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def complete(self, prompt, purpose="completion"):
        self.calls.append((purpose, prompt))
        if purpose not in self.responses:
            raise UpstreamUnavailable(f"no scripted response for {purpose}", service="gemini")
        response = self.responses[purpose]
        if isinstance(response, Exception):
            raise response
        return response

    def purposes(self):
        return [purpose for purpose, _ in self.calls]


class FakeMaps:
    """Scripted stand-in for GoogleMapsClient.

    ``elements`` maps an origin (lat, lng) to a Distance Matrix element;
    unknown origins get a 20-minute OK element. Set ``error`` to make every
    distance_matrix call raise it.
    """

    def __init__(self):
        self.elements = {}
        self.error = None
        self.places = []
        self.places_error = None
        self.matrix_calls = []
        self.places_calls = []

    def distance_matrix(self, origins, destination, mode):
        self.matrix_calls.append((list(origins), destination, mode))
        if self.error is not None:
            raise self.error
        return [self.elements.get(tuple(o), ok_element(1200)) for o in origins]

    def places_nearby(self, lat, lng, keyword=None, radius_meters=1500):
        self.places_calls.append((lat, lng, keyword))
        if self.places_error is not None:
            raise self.places_error
        return list(self.places)


def ok_element(seconds, meters=5000):
    return {
        "status": "OK",
        "duration": {"value": seconds, "text": f"{seconds // 60} mins"},
        "distance": {"value": meters, "text": f"{meters / 1000:.1f} km"},
    }


def make_listing(store, lat=None, lng=None, **overrides):
    """Insert a listing with sensible defaults and return it."""
    data = {
        "name": "Test Listing",
        "address": "1 Test St, San Francisco, CA",
        "lat": SF_CENTER[0] if lat is None else lat,
        "lng": SF_CENTER[1] if lng is None else lng,
        "price": 2500,
        "bedrooms": 2,
        "bathrooms": 1,
        "property_type": "apartment",
        "listing_type": "rent",
    }
    data.update(overrides)
    return store.add_listing(data)


@pytest.fixture()
def store(tmp_path):
    s = ListingStore(str(tmp_path / "dwelligence-test.db"))
    s.init_db()
    return s


@pytest.fixture()
def fake_llm():
    return FakeLLM()


@pytest.fixture()
def fake_maps():
    return FakeMaps()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def services(store, fake_llm, fake_maps, clock):
    """Search core built from fakes and installed on the Flask app."""
    previous = app.config["SERVICES"]
    built = build_services(
        SETTINGS,
        store=store,
        maps=fake_maps,
        llm=fake_llm,
        cache=CommuteCache(ttl_seconds=SETTINGS.commute_cache_ttl_seconds, clock=clock),
    )
    app.config["SERVICES"] = built
    yield built
    app.config["SERVICES"] = previous


@pytest.fixture()
def client(services):
    """Flask test client with rate limiting off (we're testing logic, not limits)."""
    app.config["TESTING"] = True
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True
