import os
import sys
import logging
import uuid
from typing import Optional, Tuple

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from dw_trace import TraceContext, get_trace, set_trace, clear_trace
from commute import CommuteCache, CommuteResult, CommuteService, UPSTREAM_UNAVAILABLE_TAG
from errors import ConfigError, DwelligenceError, NotFoundError, UpstreamUnavailable, ValidationError
from llm_client import GeminiClient
from maps_client import GoogleMapsClient
from models import (
    AMENITY_CATEGORIES, LISTING_TYPES, PROPERTY_TYPES, VIEWPORT_LIMIT,
    Bounds, ListingFilter, ListingStore,
)
from query_interpreter import QueryInterpreter
from ranking import RankingEngine
from scoring_config import SCORING_MODEL, RankingWeights
from search import SearchOrchestrator, SearchRequest
from settings import Settings, load_settings, missing_keys
from spatial_index import (
    DEFAULT_AMENITY_MODE, DEFAULT_COMMUTE_MODE, TravelMode,
    is_valid_coordinate, parse_travel_mode,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration: refuse to start without the required keys
# ---------------------------------------------------------------------------
try:
    SETTINGS = load_settings()
except ConfigError as exc:
    print(f"FATAL: {exc}", file=sys.stderr)
    print("Set these in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN (silent when unset)
# ---------------------------------------------------------------------------
if SETTINGS.sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Maps / Gemini outages are handled by the owning stage
            if exc_type is not None and issubclass(exc_type, UpstreamUnavailable):
                sentry_sdk.add_breadcrumb(
                    category=getattr(exc_value, "service", "upstream"),
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
            # Bad input is the caller's problem, not ours
            if exc_type is not None and issubclass(exc_type, ValidationError):
                return None
        return event

    sentry_sdk.init(
        dsn=SETTINGS.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: the app runs behind a reverse proxy that sets X-Forwarded-For,
# so Flask-Limiter and logging see the real client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# ---------------------------------------------------------------------------
# Rate limiting. The AI routes cost a model call (or several) per request.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[SETTINGS.rate_limit_default],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

def build_services(
    settings: Settings,
    store: Optional[ListingStore] = None,
    maps=None,
    llm=None,
    cache: Optional[CommuteCache] = None,
) -> dict:
    """Construct the search core. Tests pass fakes for the upstream clients."""
    store = store or ListingStore(settings.db_path)
    maps = maps or GoogleMapsClient(settings.google_maps_api_key)
    llm = llm or GeminiClient(settings.gemini_api_key, settings.gemini_model)
    cache = cache or CommuteCache(ttl_seconds=settings.commute_cache_ttl_seconds)

    weights = RankingWeights(
        time=settings.ranking_weight_time,
        price=settings.ranking_weight_price,
    )
    commutes = CommuteService(store, maps, cache=cache)
    orchestrator = SearchOrchestrator(
        store,
        QueryInterpreter(llm),
        commutes,
        RankingEngine(llm, model=SCORING_MODEL, weights=weights),
        maps=maps,
        llm=llm,
    )
    return {
        "store": store,
        "commutes": commutes,
        "search": orchestrator,
    }


def _services() -> dict:
    return app.config["SERVICES"]


# ---------------------------------------------------------------------------
# Request ID + trace middleware
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    """Assign a request ID and start a trace for API requests."""
    g.request_id = _generate_request_id()
    if request.path.startswith("/api/"):
        set_trace(TraceContext(trace_id=g.request_id))


@app.after_request
def _after_request(response):
    trace = get_trace()
    if trace is not None:
        trace.log_summary()
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


@app.teardown_request
def _clear_request_trace(exc):
    clear_trace()


# ---------------------------------------------------------------------------
# Request parsing helpers. All of these raise ValidationError.
# ---------------------------------------------------------------------------

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _to_float(value, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")


def _to_int(value, name: str) -> Optional[int]:
    number = _to_float(value, name)
    if number is None:
        return None
    if number != int(number):
        raise ValidationError(f"{name} must be a whole number")
    return int(number)


def _to_choice(value, name: str, allowed) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or value.lower() not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value.lower()


def _mode(value, default: TravelMode) -> TravelMode:
    try:
        return parse_travel_mode(value, default=default)
    except ValueError as exc:
        raise ValidationError(str(exc))


def _listing_filter(source) -> ListingFilter:
    """ListingFilter from query args or a JSON filters object.

    ``bedrooms`` is an exact match; ``bathrooms`` is a minimum.
    """
    bedrooms = _to_int(source.get("bedrooms"), "bedrooms")
    return ListingFilter(
        min_price=_to_float(source.get("minPrice"), "minPrice"),
        max_price=_to_float(source.get("maxPrice"), "maxPrice"),
        min_bedrooms=bedrooms,
        max_bedrooms=bedrooms,
        min_bathrooms=_to_float(source.get("bathrooms"), "bathrooms"),
        property_type=_to_choice(source.get("propertyType"), "propertyType", PROPERTY_TYPES),
        listing_type=_to_choice(source.get("listingType"), "listingType", LISTING_TYPES),
    )


def _bounds_from_args() -> Bounds:
    values = {}
    for name in ("north", "south", "east", "west"):
        value = _to_float(request.args.get(name), name)
        if value is None:
            raise ValidationError("Map bounds required (north, south, east, west)")
        values[name] = value
    return Bounds(**values)


def _workplace_from_args() -> Optional[Tuple[float, float]]:
    lat = _to_float(request.args.get("workplaceLat"), "workplaceLat")
    lng = _to_float(request.args.get("workplaceLng"), "workplaceLng")
    if lat is None and lng is None:
        return None
    if lat is None or lng is None or not is_valid_coordinate(lat, lng):
        raise ValidationError("Workplace coordinates required (workplaceLat, workplaceLng)")
    return lat, lng


def _workplace_from_body(value) -> Optional[Tuple[float, float]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError("Workplace location required (lat, lng)")
    lat = _to_float(value.get("lat"), "workplace.lat")
    lng = _to_float(value.get("lng"), "workplace.lng")
    if lat is None or lng is None or not is_valid_coordinate(lat, lng):
        raise ValidationError("Workplace location required (lat, lng)")
    return lat, lng


def _amenity_filter(raw: Optional[str]) -> list:
    if not raw:
        return []
    wanted = [a.strip().lower() for a in raw.split(",") if a.strip()]
    unknown = [a for a in wanted if a not in AMENITY_CATEGORIES]
    if unknown:
        raise ValidationError(f"Unknown amenity types: {', '.join(unknown)}")
    return wanted


def _error_body(message: str) -> dict:
    return {"error": message, "request_id": getattr(g, "request_id", None)}


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@app.route("/api/properties", methods=["GET"])
def list_properties():
    listings = _services()["store"].search_listings(_listing_filter(request.args))
    return jsonify([listing.to_dict() for listing in listings])


@app.route("/api/properties/map-bounds", methods=["GET"])
def properties_in_bounds():
    """Listings in the viewport with amenity counts (and commutes if a workplace is given)."""
    bounds = _bounds_from_args()
    results = _services()["search"].browse_viewport(
        bounds,
        filters=_listing_filter(request.args),
        travel_mode=_mode(request.args.get("transportMode"), DEFAULT_AMENITY_MODE),
        amenity_filter=_amenity_filter(request.args.get("amenities")),
        workplace=_workplace_from_args(),
        commute_mode=_mode(request.args.get("commuteMode"), DEFAULT_COMMUTE_MODE),
    )
    return jsonify(results)


@app.route("/api/properties/<int:listing_id>", methods=["GET"])
def get_property(listing_id):
    listing = _services()["store"].get_listing(listing_id)
    if listing is None:
        raise NotFoundError("Property not found")
    return jsonify(listing.to_dict())


@app.route("/api/properties", methods=["POST"])
def create_property():
    data = _json_body()
    record = {
        "name": data.get("name"),
        "address": data.get("address"),
        "lat": _to_float(data.get("lat"), "lat"),
        "lng": _to_float(data.get("lng"), "lng"),
        "price": _to_float(data.get("price"), "price"),
        "bedrooms": _to_int(data.get("bedrooms"), "bedrooms"),
        "bathrooms": _to_float(data.get("bathrooms"), "bathrooms"),
        "sq_ft": _to_int(data.get("sqFt"), "sqFt"),
        "property_type": _to_choice(data.get("propertyType"), "propertyType", PROPERTY_TYPES),
        "listing_type": _to_choice(data.get("saleType") or data.get("listingType"), "saleType", LISTING_TYPES),
        "description": data.get("description"),
        "image_url": data.get("imageUrl"),
    }
    listing = _services()["store"].add_listing(record)
    logger.info("Created listing %s at %.5f,%.5f", listing.id, listing.lat, listing.lng)
    return jsonify(listing.to_dict()), 201


@app.route("/api/properties/<int:listing_id>/amenities", methods=["GET"])
def property_amenities(listing_id):
    mode = _mode(request.args.get("transportMode"), DEFAULT_AMENITY_MODE)
    result = _services()["search"].listing_amenities(listing_id, mode)
    if result is None:
        raise NotFoundError("Property not found")
    return jsonify(result)


@app.route("/api/properties/<int:listing_id>/ask", methods=["POST"])
@limiter.limit(lambda: SETTINGS.rate_limit_ai)
def ask_about_property(listing_id):
    data = _json_body()
    question = data.get("question")
    if not isinstance(question, str) or not question.strip():
        raise ValidationError("Question is required")
    if len(question) > 500:
        raise ValidationError("Question must be 500 characters or fewer")
    result = _services()["search"].ask_about_listing(listing_id, question.strip())
    if result is None:
        raise NotFoundError("Property not found")
    return jsonify(result)


# ---------------------------------------------------------------------------
# Commutes
# ---------------------------------------------------------------------------

def _commute_results(commutes: CommuteService, listing_ids, workplace, mode) -> list:
    """Commute results for *listing_ids*; a failed upstream batch tags every id."""
    try:
        results = commutes.batch_commutes(listing_ids, workplace, mode)
    except UpstreamUnavailable:
        logger.warning("Commute batch failed for %d listings", len(listing_ids), exc_info=True)
        results = [CommuteResult(listing_id=i, error_tag=UPSTREAM_UNAVAILABLE_TAG) for i in listing_ids]
    return [r.to_dict() for r in results]


@app.route("/api/commute/calculate", methods=["POST"])
def calculate_commutes():
    data = _json_body()
    workplace = _workplace_from_body(data.get("workplace"))
    if workplace is None:
        raise ValidationError("Workplace location required (lat, lng)")
    ids = data.get("propertyIds")
    if not isinstance(ids, list):
        raise ValidationError("Property IDs array required")
    listing_ids = [_to_int(i, "propertyIds[]") for i in ids]
    if any(i is None for i in listing_ids):
        raise ValidationError("Property IDs must be integers")
    mode = _mode(data.get("mode"), DEFAULT_COMMUTE_MODE)
    return jsonify(_commute_results(_services()["commutes"], listing_ids, workplace, mode))


@app.route("/api/commute/batch", methods=["GET"])
def commutes_in_bounds():
    workplace = _workplace_from_args()
    if workplace is None:
        raise ValidationError("Workplace coordinates required (workplaceLat, workplaceLng)")
    bounds = _bounds_from_args()
    mode = _mode(request.args.get("mode"), DEFAULT_COMMUTE_MODE)
    services = _services()
    listings = services["store"].search_listings(bounds=bounds, limit=VIEWPORT_LIMIT)
    return jsonify(_commute_results(services["commutes"], [l.id for l in listings], workplace, mode))


# ---------------------------------------------------------------------------
# Natural-language search
# ---------------------------------------------------------------------------

@app.route("/api/search/ai", methods=["POST"])
@limiter.limit(lambda: SETTINGS.rate_limit_ai)
def ai_search():
    data = _json_body()
    query = data.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query is required")

    filters = data.get("filters") or {}
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    max_results = _to_int(data.get("maxResults"), "maxResults")
    if max_results is not None and not 1 <= max_results <= SCORING_MODEL.ai_candidate_limit:
        raise ValidationError(f"maxResults must be between 1 and {SCORING_MODEL.ai_candidate_limit}")
    mode = data.get("transportMode")

    search_request = SearchRequest(
        query=query.strip(),
        workplace=_workplace_from_body(data.get("workplace")),
        filters=_listing_filter(filters),
        max_results=max_results,
        travel_mode=_mode(mode, None) if mode else None,
    )
    try:
        response = _services()["search"].search(search_request)
    except UpstreamUnavailable:
        # Without an interpretation there is nothing to filter on.
        logger.warning("Query interpretation unavailable for %r", search_request.query, exc_info=True)
        return jsonify(_error_body("Failed to parse search query")), 500
    return jsonify(response.to_dict())


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    missing = missing_keys(os.environ)
    return jsonify({
        "status": "ok" if not missing else "degraded",
        "missing_keys": missing,
    }), 200 if not missing else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(DwelligenceError)
def handle_dwelligence_error(e):
    if e.status_code >= 500:
        logger.error("%s on %s: %s", type(e).__name__, request.path, e)
    else:
        logger.info("%s on %s: %s", type(e).__name__, request.path, e)
    return jsonify(_error_body(str(e))), e.status_code


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify(_error_body("Too many requests. Please wait and try again.")), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify(_error_body("Not found")), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify(_error_body("Method not allowed")), 405


@app.errorhandler(500)
def internal_error(e):
    return jsonify(_error_body("Internal server error")), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

app.config["SERVICES"] = build_services(SETTINGS)
# Initialize database on import (safe to call repeatedly)
app.config["SERVICES"]["store"].init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug, threaded=True)
