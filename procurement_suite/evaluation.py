"""
RFP evaluation ranking.

Methods:
- qcbs:         final = technical * technical_weight/100 + commercial * commercial_weight/100
- price_l1:     final = commercial score (scores already encode the inverse-price ranking)
- technical_l1: final = technical score
- anything else falls back to the stored total_score

Missing scores count as 0. Ranking is a stable descending sort on the final score, so equal
scores keep their input order (responses are fed in submission order).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

DEFAULT_TECHNICAL_WEIGHT = 70
DEFAULT_COMMERCIAL_WEIGHT = 30

RECOMMENDED = "Recommended"
SECOND_CHOICE = "Second Choice"
NOT_RECOMMENDED = "Not Recommended"


@dataclass
class RankedResponse:
    response: Any
    final_score: float
    rank: int
    recommendation: str

    def to_dict(self) -> dict:
        data = self.response.to_dict() if hasattr(self.response, "to_dict") else dict(self.response)
        data["final_score"] = self.final_score
        data["rank"] = self.rank
        data["recommendation"] = self.recommendation
        return data


def _score(value: Optional[float]) -> float:
    return float(value) if value is not None else 0.0


def _get(response: Any, name: str):
    if isinstance(response, dict):
        return response.get(name)
    return getattr(response, name, None)


def resolve_weights(technical_weight: Optional[int], commercial_weight: Optional[int]) -> tuple[int, int]:
    """Configured weights, or 70/30 when the RFP leaves them unset."""
    if technical_weight is None and commercial_weight is None:
        return DEFAULT_TECHNICAL_WEIGHT, DEFAULT_COMMERCIAL_WEIGHT
    return technical_weight or 0, commercial_weight or 0


def raw_final_score(
    response: Any,
    evaluation_type: Optional[str],
    technical_weight: Optional[int] = None,
    commercial_weight: Optional[int] = None,
) -> float:
    technical = _score(_get(response, "technical_score"))
    commercial = _score(_get(response, "commercial_score"))

    if evaluation_type == "qcbs":
        tw, cw = resolve_weights(technical_weight, commercial_weight)
        value = technical * tw / 100 + commercial * cw / 100
    elif evaluation_type == "price_l1":
        value = commercial
    elif evaluation_type == "technical_l1":
        value = technical
    else:
        value = _score(_get(response, "total_score"))

    return value


def final_score(
    response: Any,
    evaluation_type: Optional[str],
    technical_weight: Optional[int] = None,
    commercial_weight: Optional[int] = None,
) -> float:
    """Final score rounded to 2 decimals for display."""
    return round(raw_final_score(response, evaluation_type, technical_weight, commercial_weight), 2)


def recommendation_for(rank: int) -> str:
    if rank == 1:
        return RECOMMENDED
    if rank == 2:
        return SECOND_CHOICE
    return NOT_RECOMMENDED


def rank_responses(
    responses: Iterable[Any],
    evaluation_type: Optional[str],
    technical_weight: Optional[int] = None,
    commercial_weight: Optional[int] = None,
) -> list[RankedResponse]:
    # sort on the unrounded score; rounding only applies to the reported value
    scored = [
        (response, raw_final_score(response, evaluation_type, technical_weight, commercial_weight))
        for response in responses
    ]
    scored.sort(key=lambda pair: pair[1], reverse=True)

    return [
        RankedResponse(
            response=response,
            final_score=round(score, 2),
            rank=index,
            recommendation=recommendation_for(index),
        )
        for index, (response, score) in enumerate(scored, start=1)
    ]


def rank_rfp(rfp, qualified_only: bool = False) -> list[RankedResponse]:
    """Rank an Rfp's responses using its own evaluation settings."""
    responses = list(rfp.responses)
    if qualified_only and rfp.enable_technical_scoring:
        responses = [r for r in responses if r.is_technically_qualified]
    return rank_responses(responses, rfp.evaluation_type, rfp.technical_weight, rfp.commercial_weight)
