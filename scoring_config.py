"""
Ranking model configuration for Dwelligence.

Owns every numeric constant that affects result ordering. Grid resolutions
and the travel-mode table live in spatial_index.py; cache TTLs live with the
commute cache.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Optional


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class RankingWeights:
    """Weights for the deterministic score.

    score = time * commute_minutes + price * price  (lower is better)
    """
    time: float = 0.5
    price: float = 0.5


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for ranking parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters result ordering.
    """
    version: str
    weights: RankingWeights
    # Substituted for a missing commute when a destination is set, so
    # listings without commute data sink to the bottom instead of being
    # ranked on price alone.
    missing_commute_seconds: int
    # Upper bound on candidates sent to the AI ranker per request.
    ai_candidate_limit: int
    neutral_justification: str
    default_max_results: int


# =============================================================================
# Pure scoring functions
# =============================================================================

def deterministic_score(
    price: float,
    commute_seconds: Optional[float],
    has_destination: bool,
    weights: RankingWeights,
    missing_commute_seconds: int,
) -> float:
    """Weighted commute/price score, lower is better.

    Without a destination the price is the only key (unweighted, so the
    ordering matches a plain price sort).
    """
    if not has_destination:
        return float(price)
    if commute_seconds is None:
        commute_seconds = missing_commute_seconds
    return weights.time * (commute_seconds / 60.0) + weights.price * float(price)


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

SCORING_MODEL = ScoringModel(
    version="1.0.0",
    weights=RankingWeights(time=0.5, price=0.5),
    missing_commute_seconds=999_999,
    ai_candidate_limit=50,
    neutral_justification="Matched your search criteria",
    default_max_results=20,
)
