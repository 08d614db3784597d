"""
Search orchestration: natural-language search, map viewport browsing,
single-listing amenities, and listing Q&A.

Natural-language search runs as a small state machine:

    PARSING -> NEEDS_CLARIFICATION                       (ends the turn)
            -> FILTERING -> AMENITY_FILTERING (if amenity preferences)
                         -> COMMUTE_ENRICHING (if a destination is known)
                         -> RANKING -> DONE
    FILTERING with zero rows goes straight to DONE.

Interpretation failures end the request. Amenity, commute and ranking
failures degrade: the response carries fewer enriched fields, not an error.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from amenities import amenities_near, amenity_counts_for, has_any
from commute import CommuteService
from dw_trace import skip_traced_stage, traced_stage
from errors import UpstreamUnavailable
from models import AMENITY_CATEGORIES, VIEWPORT_LIMIT, Bounds, Listing, ListingFilter, ListingStore
from query_interpreter import CLARIFICATION_QUESTION, QueryInterpreter, SearchIntent
from ranking import Candidate, RankedCandidate, RankingEngine, deterministic_order
from spatial_index import (
    DEFAULT_AMENITY_MODE,
    DEFAULT_COMMUTE_MODE,
    TravelMode,
    cell_boundary,
)

logger = logging.getLogger(__name__)

# Buffer added around the filtered listings before the amenity re-query (~1 km).
AMENITY_BOX_BUFFER_DEG = 0.01

NO_MATCHES_MESSAGE = "No properties match your search criteria."
NO_AMENITY_MATCHES_MESSAGE = "No properties matching your search have the nearby amenities you asked for."

MAX_PROMPT_PLACES = 10
MAX_RETURNED_PLACES = 5
ASK_FALLBACK_ANSWER = (
    "I'm having trouble processing your question right now. Please try rephrasing "
    "or ask about a specific type of amenity like 'coffee shops' or 'grocery stores'."
)

# Question keyword -> Places keyword. First match wins.
_PLACE_KEYWORDS = (
    (re.compile(r"\b(coffee|cafe|café|espresso)", re.I), "cafe"),
    (re.compile(r"\b(grocery|groceries|supermarket|market)", re.I), "grocery store"),
    (re.compile(r"\b(gym|fitness|workout)", re.I), "gym"),
    (re.compile(r"\b(pharmacy|drugstore|chemist)", re.I), "pharmacy"),
    (re.compile(r"\b(restaurant|dinner|lunch|food|eat)", re.I), "restaurant"),
    (re.compile(r"\b(park|playground|green space)", re.I), "park"),
    (re.compile(r"\b(transit|bus|train|subway|metro|station)", re.I), "transit station"),
    (re.compile(r"\b(school|daycare)", re.I), "school"),
)

_REFERENCE_RE = re.compile(r"\[(\d{1,2})\]")


class SearchState(str, Enum):
    PARSING = "parsing"
    NEEDS_CLARIFICATION = "needs_clarification"
    FILTERING = "filtering"
    AMENITY_FILTERING = "amenity_filtering"
    COMMUTE_ENRICHING = "commute_enriching"
    RANKING = "ranking"
    DONE = "done"


@dataclass
class SearchRequest:
    query: str
    workplace: Optional[Tuple[float, float]] = None
    filters: ListingFilter = field(default_factory=ListingFilter)
    max_results: Optional[int] = None
    travel_mode: Optional[TravelMode] = None


@dataclass
class SearchResponse:
    query: str
    intent: SearchIntent
    states: List[SearchState] = field(default_factory=list)
    results: List[RankedCandidate] = field(default_factory=list)
    total_candidates: int = 0
    ranking_method: Optional[str] = None
    message: Optional[str] = None
    default_mode: Optional[TravelMode] = None

    @property
    def needs_clarification(self) -> bool:
        return SearchState.NEEDS_CLARIFICATION in self.states

    def to_dict(self) -> dict:
        if self.needs_clarification:
            return {
                "needsClarity": True,
                "clarificationQuestion": CLARIFICATION_QUESTION,
                "defaultTransportMode": self.default_mode.value if self.default_mode else None,
                "query": self.query,
                "interpretation": self.intent.summary,
                "intent": self.intent.to_dict(),
            }
        return {
            "needsClarity": False,
            "query": self.query,
            "interpretation": self.intent.summary,
            "intent": self.intent.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "totalResults": self.total_candidates,
            "rankingMethod": self.ranking_method,
            "message": self.message,
        }


def _places_keyword(question: str) -> Optional[str]:
    for pattern, keyword in _PLACE_KEYWORDS:
        if pattern.search(question):
            return keyword
    return None


def _place_to_dict(index: int, place: dict) -> dict:
    location = (place.get("geometry") or {}).get("location") or {}
    return {
        "index": index,
        "placeId": place.get("place_id"),
        "name": place.get("name"),
        "lat": location.get("lat"),
        "lng": location.get("lng"),
        "types": place.get("types") or [],
        "rating": place.get("rating"),
        "vicinity": place.get("vicinity"),
    }


def build_ask_prompt(listing: Listing, question: str, places: Sequence[dict]) -> str:
    if places:
        lines = []
        for place in places:
            line = f"{place['index']}. {place['name']} ({', '.join(place['types']) or 'unknown type'})"
            if place.get("rating"):
                line += f" - Rating: {place['rating']}/5"
            if place.get("vicinity"):
                line += f" - {place['vicinity']}"
            lines.append(line)
        places_text = "\n".join(lines)
    else:
        places_text = "No nearby places found for this query"

    return f"""
You are a helpful real estate assistant. Answer the user's question about nearby amenities for this property.

Property: {listing.address or f"{listing.lat}, {listing.lng}"}

User question: "{question.replace('"', "'")}"

Nearby places (numbered list):
{places_text}

Provide a helpful, conversational answer that:
1. Directly answers the user's question
2. References specific places by their NUMBER (e.g., "Sightglass Coffee [4]" or "places like [1] and [3]")
3. Includes relevant details like ratings if available
4. Is concise (2-4 sentences max)
5. Suggests alternatives if exact match isn't found

If no relevant places were found, suggest the user try a broader search or different amenity type.

Return ONLY the answer text, no JSON, no markdown formatting.
"""


def referenced_places(answer: str, places: Sequence[dict]) -> List[dict]:
    """Places cited as [n] in *answer*, in citation order; top few if none cited."""
    by_index = {p["index"]: p for p in places}
    cited: List[dict] = []
    for match in _REFERENCE_RE.finditer(answer or ""):
        place = by_index.get(int(match.group(1)))
        if place is not None and place not in cited:
            cited.append(place)
    return cited or list(places[:MAX_RETURNED_PLACES])


class SearchOrchestrator:
    """Composes interpreter, store, amenities, commutes and ranking."""

    def __init__(
        self,
        store: ListingStore,
        interpreter: QueryInterpreter,
        commutes: CommuteService,
        ranker: RankingEngine,
        maps=None,
        llm=None,
    ):
        self.store = store
        self.interpreter = interpreter
        self.commutes = commutes
        self.ranker = ranker
        self.maps = maps
        self.llm = llm

    # ------------------------------------------------------------------
    # Natural-language search
    # ------------------------------------------------------------------

    def search(self, request: SearchRequest) -> SearchResponse:
        """Run the natural-language pipeline for one request.

        Raises ParseError or UpstreamUnavailable only from PARSING.
        """
        states = [SearchState.PARSING]
        with traced_stage(SearchState.PARSING.value):
            intent = self.interpreter.parse(request.query)
        if request.travel_mode is not None:
            intent = intent.with_travel_mode(request.travel_mode)

        response = SearchResponse(query=request.query, intent=intent, states=states)

        if intent.needs_clarification:
            states.append(SearchState.NEEDS_CLARIFICATION)
            response.default_mode = QueryInterpreter.default_mode
            logger.info("Query %r needs a travel mode; asking the caller", request.query)
            return response

        states.append(SearchState.FILTERING)
        listing_filter = intent.to_filter().merged_with(request.filters)
        with traced_stage(SearchState.FILTERING.value):
            listings = self.store.search_listings(listing_filter)
        if not listings:
            states.append(SearchState.DONE)
            response.message = NO_MATCHES_MESSAGE
            return response

        amenity_counts: Dict[int, Dict[str, int]] = {}
        if intent.amenity_preferences:
            states.append(SearchState.AMENITY_FILTERING)
            with traced_stage(SearchState.AMENITY_FILTERING.value):
                listings, amenity_counts = self._filter_by_amenities(
                    listings, listing_filter, intent,
                )
            if not listings:
                states.append(SearchState.DONE)
                response.message = NO_AMENITY_MATCHES_MESSAGE
                return response
        else:
            skip_traced_stage(SearchState.AMENITY_FILTERING.value)

        candidates = [
            Candidate(listing=l, amenity_counts=amenity_counts.get(l.id)) for l in listings
        ]

        if request.workplace is not None:
            states.append(SearchState.COMMUTE_ENRICHING)
            mode = intent.travel_mode or DEFAULT_COMMUTE_MODE
            with traced_stage(SearchState.COMMUTE_ENRICHING.value):
                self._attach_commutes(candidates, request.workplace, mode)
        else:
            skip_traced_stage(SearchState.COMMUTE_ENRICHING.value)

        states.append(SearchState.RANKING)
        with traced_stage(SearchState.RANKING.value):
            ranked, method = self.ranker.rank(
                candidates, request.query, request.workplace, request.max_results,
            )
        states.append(SearchState.DONE)

        response.results = ranked
        response.total_candidates = len(candidates)
        response.ranking_method = method
        return response

    def _filter_by_amenities(
        self,
        listings: List[Listing],
        listing_filter: ListingFilter,
        intent: SearchIntent,
    ) -> Tuple[List[Listing], Dict[int, Dict[str, int]]]:
        mode = intent.travel_mode or DEFAULT_AMENITY_MODE
        box = Bounds.covering(listings, buffer_deg=AMENITY_BOX_BUFFER_DEG)
        in_box = self.store.search_listings(listing_filter, bounds=box)
        counts = amenity_counts_for(self.store, in_box, mode)
        kept = [l for l in in_box if has_any(counts[l.id], intent.amenity_preferences)]
        logger.info(
            "Amenity filter %s (%s): %d of %d listings kept",
            list(intent.amenity_preferences), mode.value, len(kept), len(in_box),
        )
        return kept, {l.id: counts[l.id] for l in kept}

    def _attach_commutes(
        self,
        candidates: Sequence[Candidate],
        destination: Tuple[float, float],
        mode: TravelMode,
    ):
        try:
            results = self.commutes.commutes_for_listings(
                [c.listing for c in candidates], destination, mode,
            )
        except UpstreamUnavailable:
            logger.warning("Commute enrichment failed; continuing without commute data", exc_info=True)
            return
        by_id = {r.listing_id: r for r in results}
        for candidate in candidates:
            result = by_id.get(candidate.listing.id)
            if result is not None and result.ok:
                candidate.commute = result.record

    # ------------------------------------------------------------------
    # Map viewport
    # ------------------------------------------------------------------

    def browse_viewport(
        self,
        bounds: Bounds,
        filters: Optional[ListingFilter] = None,
        travel_mode: TravelMode = DEFAULT_AMENITY_MODE,
        amenity_filter: Sequence[str] = (),
        workplace: Optional[Tuple[float, float]] = None,
        commute_mode: TravelMode = DEFAULT_COMMUTE_MODE,
    ) -> List[dict]:
        """Listings in the viewport with amenity counts, in deterministic order.

        With *amenity_filter*, only listings with at least one of those
        categories are kept. With *workplace*, commutes are attached (failures
        leave them empty) and ordering uses the weighted score; otherwise
        price alone.
        """
        with traced_stage("viewport_listings"):
            listings = self.store.search_listings(filters, bounds=bounds, limit=VIEWPORT_LIMIT)
        with traced_stage("viewport_amenities"):
            counts = amenity_counts_for(self.store, listings, travel_mode)
        wanted = [a for a in amenity_filter if a in AMENITY_CATEGORIES]
        if wanted:
            listings = [l for l in listings if has_any(counts[l.id], wanted)]

        candidates = [Candidate(listing=l, amenity_counts=counts[l.id]) for l in listings]
        if workplace is not None and candidates:
            with traced_stage("viewport_commutes"):
                self._attach_commutes(candidates, workplace, commute_mode)

        ordered = deterministic_order(candidates, workplace is not None, self.ranker.model, self.ranker.weights)
        return [
            RankedCandidate(
                listing=c.listing,
                commute=c.commute,
                score=score,
                amenity_counts=c.amenity_counts,
            ).to_dict()
            for c, score in ordered
        ]

    # ------------------------------------------------------------------
    # Single listing
    # ------------------------------------------------------------------

    def listing_amenities(self, listing_id: int, travel_mode: TravelMode) -> Optional[dict]:
        """Cell polygon and nearest amenities for one listing, or None if unknown."""
        listing = self.store.get_listing(listing_id)
        if listing is None:
            return None
        summary = amenities_near(self.store, listing, travel_mode)
        return {
            "listing": listing.to_dict(),
            "transportMode": TravelMode(travel_mode).value,
            "cellBoundaryPolygon": cell_boundary(summary.cell_id) if summary.cell_id else [],
            **summary.to_dict(),
        }

    def ask_about_listing(self, listing_id: int, question: str) -> Optional[dict]:
        """Answer a question about what's near a listing, or None if unknown."""
        listing = self.store.get_listing(listing_id)
        if listing is None:
            return None

        places: List[dict] = []
        if self.maps is not None:
            try:
                with traced_stage("ask_places"):
                    raw = self.maps.places_nearby(listing.lat, listing.lng, keyword=_places_keyword(question))
                places = [_place_to_dict(i + 1, p) for i, p in enumerate(raw[:MAX_PROMPT_PLACES])]
            except UpstreamUnavailable:
                logger.warning("Places lookup failed for listing %s", listing_id, exc_info=True)

        if self.llm is None:
            return {"answer": ASK_FALLBACK_ANSWER, "nearbyPOIs": []}
        try:
            with traced_stage("ask_answer"):
                answer = self.llm.complete(build_ask_prompt(listing, question, places), purpose="ask")
        except UpstreamUnavailable:
            logger.warning("Answer generation failed for listing %s", listing_id, exc_info=True)
            return {"answer": ASK_FALLBACK_ANSWER, "nearbyPOIs": []}

        return {"answer": answer, "nearbyPOIs": referenced_places(answer, places)}
