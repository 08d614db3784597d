"""
Candidate ranking: AI relevance pass with a deterministic fallback.

The deterministic order (scoring_config.deterministic_score, ties by listing
id) is always computed. The AI pass sees at most ai_candidate_limit
candidates in that order and returns [{id, reason}, ...]. Any failure,
including a reply that names none of our ids, falls back to the
deterministic order with a neutral justification. Nothing is retried.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from commute import CommuteRecord
from errors import ParseError, UpstreamUnavailable
from llm_client import strip_code_fences
from models import Listing
from scoring_config import SCORING_MODEL, RankingWeights, ScoringModel, deterministic_score

logger = logging.getLogger(__name__)

RANKED_BY_AI = "ai"
RANKED_BY_SCORE = "score"


@dataclass
class Candidate:
    """A listing with whatever enrichment the pipeline managed to attach."""
    listing: Listing
    commute: Optional[CommuteRecord] = None
    amenity_counts: Optional[Dict[str, int]] = None


@dataclass
class RankedCandidate:
    listing: Listing
    commute: Optional[CommuteRecord] = None
    justification: Optional[str] = None
    score: float = 0.0
    amenity_counts: Optional[Dict[str, int]] = field(default=None)

    def to_dict(self) -> dict:
        data = self.listing.to_dict()
        if self.commute is not None:
            data["commute"] = {
                "duration": self.commute.duration_seconds,
                "durationText": self.commute.duration_text,
                "distance": self.commute.distance_meters,
                "distanceText": self.commute.distance_text,
                "mode": self.commute.mode,
            }
        else:
            data["commute"] = None
        data["aiReason"] = self.justification
        data["rankingScore"] = round(self.score, 4)
        if self.amenity_counts is not None:
            data["amenityCounts"] = dict(self.amenity_counts)
        return data


RANK_PROMPT_TEMPLATE = """
You are a real estate search assistant. Rank these properties from best to worst match based on the user's query.

User query: "{query}"
{workplace_line}

Properties (simplified):
{properties}

Ranking criteria:
1. Match to query requirements (bedrooms, price, amenities)
2. Commute time (if workplace is set and user cares about commute)
3. Price (prefer better value)
4. Overall quality

Return ONLY a JSON array of property IDs in ranked order with a brief reason for each:
[
  {{ "id": 1, "reason": "Best transit access and within budget" }},
  {{ "id": 5, "reason": "Shorter commute, slightly over budget but great value" }}
]

Return ONLY valid JSON, no markdown formatting, no explanations.
"""


def score_candidate(
    candidate: Candidate,
    has_destination: bool,
    model: ScoringModel = SCORING_MODEL,
    weights: Optional[RankingWeights] = None,
) -> float:
    commute_seconds = candidate.commute.duration_seconds if candidate.commute else None
    return deterministic_score(
        candidate.listing.price,
        commute_seconds,
        has_destination,
        weights or model.weights,
        model.missing_commute_seconds,
    )


def deterministic_order(
    candidates: Sequence[Candidate],
    has_destination: bool,
    model: ScoringModel = SCORING_MODEL,
    weights: Optional[RankingWeights] = None,
) -> List[Tuple[Candidate, float]]:
    """Candidates with their scores, lowest score first, ties by listing id.

    With a destination, candidates without commute data always come after
    those with it, whatever the price scale.
    """
    scored = [(c, score_candidate(c, has_destination, model, weights)) for c in candidates]
    scored.sort(key=lambda pair: (
        has_destination and pair[0].commute is None,
        pair[1],
        pair[0].listing.id,
    ))
    return scored


def build_rank_prompt(
    candidates: Sequence[Candidate],
    query: str,
    destination: Optional[Tuple[float, float]],
) -> str:
    simplified = [
        {
            "id": c.listing.id,
            "price": c.listing.price,
            "bedrooms": c.listing.bedrooms,
            "bathrooms": c.listing.bathrooms,
            "address": c.listing.address,
            "commuteDuration": c.commute.duration_seconds if c.commute else None,
            "commuteDurationText": c.commute.duration_text if c.commute else None,
            "amenityCounts": c.amenity_counts,
        }
        for c in candidates
    ]
    workplace_line = (
        f"Workplace location: {destination[0]}, {destination[1]}" if destination else "No workplace set"
    )
    return RANK_PROMPT_TEMPLATE.format(
        query=query.replace('"', "'"),
        workplace_line=workplace_line,
        properties=json.dumps(simplified, indent=2),
    )


def parse_rank_response(text: str) -> List[Tuple[object, str]]:
    """Decode the model's ranked list into (id, reason) pairs.

    Raises ParseError if the body isn't a JSON array of objects with an id.
    """
    body = strip_code_fences(text)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Ranking response is not JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ParseError("Ranking response must be a JSON array")
    pairs = []
    for item in data:
        if not isinstance(item, dict) or "id" not in item:
            raise ParseError(f"Ranking entry must be an object with an id, got {item!r}")
        reason = item.get("reason")
        pairs.append((item["id"], reason if isinstance(reason, str) else ""))
    return pairs


def _coerce_id(raw) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class RankingEngine:
    """Orders candidates for one request."""

    def __init__(
        self,
        llm=None,
        model: ScoringModel = SCORING_MODEL,
        weights: Optional[RankingWeights] = None,
    ):
        self.llm = llm
        self.model = model
        self.weights = weights or model.weights

    def rank(
        self,
        candidates: Sequence[Candidate],
        query: str,
        destination: Optional[Tuple[float, float]] = None,
        max_results: Optional[int] = None,
    ) -> Tuple[List[RankedCandidate], str]:
        """Return (ranked candidates, method) where method is "ai" or "score"."""
        max_results = max_results or self.model.default_max_results
        ordered = deterministic_order(candidates, destination is not None, self.model, self.weights)
        if not ordered:
            return [], RANKED_BY_SCORE

        if self.llm is not None:
            try:
                ranked = self._rank_with_ai(ordered, query, destination, max_results)
                if ranked:
                    return ranked, RANKED_BY_AI
                logger.warning("AI ranking named none of the %d candidates; using score order", len(ordered))
            except (UpstreamUnavailable, ParseError) as exc:
                logger.warning("AI ranking failed, using score order: %s", exc)

        return self.fallback(ordered, max_results), RANKED_BY_SCORE

    def fallback(
        self,
        ordered: Sequence[Tuple[Candidate, float]],
        max_results: int,
    ) -> List[RankedCandidate]:
        return [
            RankedCandidate(
                listing=c.listing,
                commute=c.commute,
                justification=self.model.neutral_justification,
                score=score,
                amenity_counts=c.amenity_counts,
            )
            for c, score in ordered[:max_results]
        ]

    def _rank_with_ai(
        self,
        ordered: Sequence[Tuple[Candidate, float]],
        query: str,
        destination: Optional[Tuple[float, float]],
        max_results: int,
    ) -> List[RankedCandidate]:
        bounded = ordered[: self.model.ai_candidate_limit]
        prompt = build_rank_prompt([c for c, _ in bounded], query, destination)
        pairs = parse_rank_response(self.llm.complete(prompt, purpose="rank"))

        by_id = {c.listing.id: (c, score) for c, score in bounded}
        ranked: List[RankedCandidate] = []
        seen = set()
        for raw_id, reason in pairs:
            listing_id = _coerce_id(raw_id)
            if listing_id is None or listing_id not in by_id or listing_id in seen:
                continue
            seen.add(listing_id)
            candidate, score = by_id[listing_id]
            ranked.append(RankedCandidate(
                listing=candidate.listing,
                commute=candidate.commute,
                justification=reason or self.model.neutral_justification,
                score=score,
                amenity_counts=candidate.amenity_counts,
            ))
            if len(ranked) >= max_results:
                break
        return ranked
