"""
Natural-language query interpretation.

Turns "2 bedroom apartment near parks under $2500" into a SearchIntent by
asking the text-completion model for a fixed JSON shape and validating the
answer strictly. A response that isn't that shape is a ParseError; there is
no safe default reading of free text.

Proximity interest ("near parks", "walkable") without a travel mode marks the
intent as needing clarification, because the amenity join resolution depends
on the mode.
"""

import dataclasses
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from errors import ParseError
from llm_client import strip_code_fences
from models import AMENITY_CATEGORIES, LISTING_TYPES, PROPERTY_TYPES, ListingFilter
from spatial_index import DEFAULT_AMENITY_MODE, TravelMode

logger = logging.getLogger(__name__)

PROXIMITY_RE = re.compile(
    r"\b(near|nearby|close\s+to|closer\s+to|walkable|walking\s+distance|within\s+reach|next\s+to|around\s+the\s+corner)\b",
    re.I,
)

CLARIFICATION_QUESTION = (
    "How will you get to nearby places: walking, bicycling, driving, or transit?"
)

PARSE_PROMPT_TEMPLATE = """
You are a real estate search assistant. Parse this natural language query into structured search parameters.

Query: "{query}"

Available properties data structure:
- price (number)
- bedrooms (number)
- bathrooms (number)
- property_type (apartment, house)
- listing_type (rent, sale)
- amenity_types: {amenity_types}

Extract and return ONLY a valid JSON object with these fields:
{{
  "priceRange": {{ "min": number or null, "max": number or null }},
  "bedrooms": {{ "min": number or null, "max": number or null }},
  "bathrooms": {{ "min": number or null, "max": number or null }},
  "propertyType": string or null (must be "apartment" or "house"),
  "listingType": string or null (must be "rent" or "sale"),
  "amenityPreferences": [array of strings from amenity_types list],
  "commutePreference": string or null (e.g., "short", "quick", "walkable", "transit accessible"),
  "transportMode": string or null ("walking", "bicycling", "driving", or "transit"),
  "needsTransportModeClarity": boolean (true if query mentions "nearby" without specifying transport mode),
  "summary": "brief 1-sentence interpretation of the query"
}}

Important rules:
- If bedrooms/bathrooms is exact number (e.g., "2 bedroom"), set min and max to that number
- If bedrooms/bathrooms uses "+" (e.g., "2+ bedrooms"), set only min
- For price ranges like "under $2000", set max only
- For price ranges like "over $1500", set min only
- Only include amenity types from the provided list
- Set needsTransportModeClarity to true ONLY if query mentions proximity/nearby but doesn't specify HOW user will get there
- Return ONLY valid JSON, no markdown formatting, no explanations

Example:
Query: "2 bedroom apartment near parks under $2500"
{{
  "priceRange": {{ "min": null, "max": 2500 }},
  "bedrooms": {{ "min": 2, "max": 2 }},
  "bathrooms": {{ "min": null, "max": null }},
  "propertyType": "apartment",
  "listingType": null,
  "amenityPreferences": ["park"],
  "commutePreference": null,
  "transportMode": null,
  "needsTransportModeClarity": true,
  "summary": "Looking for 2-bedroom apartments under $2,500/month near parks"
}}
"""


@dataclass(frozen=True)
class SearchIntent:
    """Structured reading of one natural-language query. Read-only."""
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[int] = None
    max_bedrooms: Optional[int] = None
    min_bathrooms: Optional[float] = None
    max_bathrooms: Optional[float] = None
    property_type: Optional[str] = None
    listing_type: Optional[str] = None
    amenity_preferences: Tuple[str, ...] = ()
    commute_preference: Optional[str] = None
    travel_mode: Optional[TravelMode] = None
    needs_clarification: bool = False
    summary: str = ""

    def to_filter(self) -> ListingFilter:
        return ListingFilter(
            min_price=self.min_price,
            max_price=self.max_price,
            min_bedrooms=self.min_bedrooms,
            max_bedrooms=self.max_bedrooms,
            min_bathrooms=self.min_bathrooms,
            max_bathrooms=self.max_bathrooms,
            property_type=self.property_type,
            listing_type=self.listing_type,
        )

    def with_travel_mode(self, mode: TravelMode) -> "SearchIntent":
        """Copy with an explicit mode; an explicit mode resolves clarification."""
        return dataclasses.replace(self, travel_mode=TravelMode(mode), needs_clarification=False)

    def to_dict(self) -> dict:
        return {
            "priceRange": {"min": self.min_price, "max": self.max_price},
            "bedrooms": {"min": self.min_bedrooms, "max": self.max_bedrooms},
            "bathrooms": {"min": self.min_bathrooms, "max": self.max_bathrooms},
            "propertyType": self.property_type,
            "listingType": self.listing_type,
            "amenityPreferences": list(self.amenity_preferences),
            "commutePreference": self.commute_preference,
            "transportMode": self.travel_mode.value if self.travel_mode else None,
            "needsTransportModeClarity": self.needs_clarification,
            "summary": self.summary,
        }


# =============================================================================
# Strict field readers
# =============================================================================

def _number(value: Any, field_name: str) -> Optional[float]:
    if value is None:
        return None
    # bool is an int subclass; "true" is never a price.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"{field_name} must be a number or null, got {value!r}")
    return value


def _range(data: Dict[str, Any], key: str) -> Tuple[Optional[float], Optional[float]]:
    value = data.get(key)
    if value is None:
        return None, None
    if not isinstance(value, dict):
        raise ParseError(f"{key} must be an object with min/max, got {value!r}")
    return _number(value.get("min"), f"{key}.min"), _number(value.get("max"), f"{key}.max")


def _choice(data: Dict[str, Any], key: str, allowed) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"{key} must be a string or null, got {value!r}")
    value = value.strip().lower()
    if not value:
        return None
    if value not in allowed:
        raise ParseError(f"{key} must be one of {', '.join(allowed)}, got {value!r}")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"{key} must be a string or null, got {value!r}")
    return value.strip() or None


def _amenities(data: Dict[str, Any]) -> Tuple[str, ...]:
    value = data.get("amenityPreferences")
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ParseError(f"amenityPreferences must be a list of strings, got {value!r}")
    kept = []
    for item in value:
        category = item.strip().lower()
        if category not in AMENITY_CATEGORIES:
            logger.warning("Dropping unknown amenity preference %r", item)
            continue
        if category not in kept:
            kept.append(category)
    return tuple(kept)


def _bedroom_bounds(low: Optional[float], high: Optional[float]) -> Tuple[Optional[int], Optional[int]]:
    """Whole-bedroom bounds; fractional values round inward (min 2.5 means 3+)."""
    return (
        None if low is None else math.ceil(low),
        None if high is None else math.floor(high),
    )


def intent_from_dict(data: Any, query: str = "") -> SearchIntent:
    """Validate a decoded model response into a SearchIntent.

    Raises ParseError on any shape mismatch.
    """
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")

    min_price, max_price = _range(data, "priceRange")
    min_bed, max_bed = _bedroom_bounds(*_range(data, "bedrooms"))
    min_bath, max_bath = _range(data, "bathrooms")

    mode_value = _choice(data, "transportMode", [m.value for m in TravelMode])
    travel_mode = TravelMode(mode_value) if mode_value else None

    flag = data.get("needsTransportModeClarity", False)
    if flag is None:
        flag = False
    if not isinstance(flag, bool):
        raise ParseError(f"needsTransportModeClarity must be a boolean, got {flag!r}")

    summary = data.get("summary") or ""
    if not isinstance(summary, str):
        raise ParseError(f"summary must be a string, got {summary!r}")

    amenities = _amenities(data)
    needs_clarification = travel_mode is None and (
        flag or bool(amenities) or bool(PROXIMITY_RE.search(query or ""))
    )

    return SearchIntent(
        min_price=min_price,
        max_price=max_price,
        min_bedrooms=min_bed,
        max_bedrooms=max_bed,
        min_bathrooms=min_bath,
        max_bathrooms=max_bath,
        property_type=_choice(data, "propertyType", PROPERTY_TYPES),
        listing_type=_choice(data, "listingType", LISTING_TYPES),
        amenity_preferences=amenities,
        commute_preference=_optional_str(data, "commutePreference"),
        travel_mode=travel_mode,
        needs_clarification=needs_clarification,
        summary=summary.strip(),
    )


def build_parse_prompt(query: str) -> str:
    return PARSE_PROMPT_TEMPLATE.format(
        query=query.replace('"', "'"),
        amenity_types=", ".join(AMENITY_CATEGORIES),
    )


class QueryInterpreter:
    """Free text -> SearchIntent via the text-completion model."""

    default_mode = DEFAULT_AMENITY_MODE

    def __init__(self, llm):
        self.llm = llm

    def parse(self, text: str) -> SearchIntent:
        """Interpret *text*.

        Raises ParseError for malformed model output and UpstreamUnavailable
        if the model can't be reached.
        """
        raw = self.llm.complete(build_parse_prompt(text), purpose="parse_query")
        body = strip_code_fences(raw)
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            logger.error("Query parse response is not JSON: %s (first 200 chars: %s)", exc, body[:200])
            raise ParseError("Failed to parse search query") from exc
        intent = intent_from_dict(data, query=text)
        logger.info(
            "Parsed query %r -> mode=%s amenities=%s clarify=%s",
            text, intent.travel_mode.value if intent.travel_mode else None,
            list(intent.amenity_preferences), intent.needs_clarification,
        )
        return intent
