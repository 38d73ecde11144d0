"""
Document quality gate.

Decides whether a document's evaluation is strong enough for its claims to
take part in consensus and disagreement analysis.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from consensus_backend.config import (
    BASIC_DIMENSION_SCORE,
    MIN_CRITICAL_SCORE,
    MIN_QUALITY_SCORE,
    MIN_VIEWPOINT_SCORE,
)
from consensus_backend.services.rubrics import (
    REASONING_KEY,
    VIEWPOINT_DIMENSION,
    Rubric,
    get_rubric,
)


@dataclass(frozen=True)
class QualityThresholds:
    overall: float = MIN_QUALITY_SCORE
    critical: float = MIN_CRITICAL_SCORE
    viewpoint: float = MIN_VIEWPOINT_SCORE
    basic_dimension: float = BASIC_DIMENSION_SCORE


@dataclass
class QualityDecision:
    is_sufficient: bool
    overall_score: float
    critical_score: float
    reasons: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_sufficient": self.is_sufficient,
            "overall_score": round(self.overall_score, 2),
            "critical_score": round(self.critical_score, 2),
            "reasons": list(self.reasons),
            "suggestions": list(self.suggestions),
        }


def _numeric_scores(scores: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Drop the reasoning sub-key and any non-numeric values."""
    numeric = {}
    for key, value in (scores or {}).items():
        if key == REASONING_KEY:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        numeric[key] = float(value)
    return numeric


def calculate_weighted_score(scores: Mapping[str, float], rubric: Rubric) -> float:
    weighted_sum = 0.0
    total_weight = 0.0
    for dimension, score in scores.items():
        weight = rubric.weight(dimension)
        weighted_sum += score * weight
        total_weight += weight
    return weighted_sum / total_weight if total_weight > 0 else 0.0


def calculate_critical_score(scores: Mapping[str, float], rubric: Rubric) -> float:
    present = [scores[dim] for dim in rubric.critical_dimensions if dim in scores]
    return sum(present) / len(present) if present else 0.0


def check_document_quality(
    scores: Optional[Mapping[str, Any]],
    discipline: Optional[str] = None,
    thresholds: Optional[QualityThresholds] = None,
) -> QualityDecision:
    """
    Score one evaluation against its discipline rubric.

    Args:
        scores: Dimension -> 0-10 score mapping (may contain ``_reasoning``)
        discipline: Discipline tag; unknown or missing uses the default rubric
        thresholds: Override for the environment-configured thresholds

    Returns:
        QualityDecision; ``is_sufficient`` is True only when every check passes
    """
    thresholds = thresholds or QualityThresholds()
    rubric = get_rubric(discipline)
    numeric = _numeric_scores(scores)

    overall_score = calculate_weighted_score(numeric, rubric)
    critical_score = calculate_critical_score(numeric, rubric)

    reasons: List[str] = []
    suggestions: List[str] = []

    if overall_score < thresholds.overall:
        reasons.append(f"Overall score has room to improve (currently {overall_score:.1f}/10)")
        suggestions.append("Raise overall quality so the position is clearer and better argued")

    if critical_score < thresholds.critical:
        dims = "、".join(rubric.critical_dimensions)
        reasons.append(
            f"Critical dimensions ({dims}) average has room to improve (currently {critical_score:.1f}/10)"
        )
        suggestions.append("Strengthen the viewpoint, the logical argument and the supporting evidence")

    viewpoint = numeric.get(VIEWPOINT_DIMENSION, 0.0)
    if viewpoint < thresholds.viewpoint:
        reasons.append(
            f"Viewpoint dimension is too weak (currently {viewpoint:.1f}/10) to extract usable claims"
        )
        suggestions.append("State the core position explicitly and argue it clearly")

    if numeric and not any(score >= thresholds.basic_dimension for score in numeric.values()):
        reasons.append(
            f"No dimension reaches the basic requirement ({thresholds.basic_dimension:g} or above)"
        )
        suggestions.append("Improve the document so at least one dimension meets the basic requirement")

    return QualityDecision(
        is_sufficient=not reasons,
        overall_score=overall_score,
        critical_score=critical_score,
        reasons=reasons,
        suggestions=suggestions,
    )


def evaluate_document(document, discipline: Optional[str] = None,
                      thresholds: Optional[QualityThresholds] = None) -> Optional[QualityDecision]:
    """Quality decision for a loaded document, or None when it has no evaluation."""
    evaluation = getattr(document, "latest_evaluation", None)
    if evaluation is None:
        return None
    return check_document_quality(
        evaluation.scores,
        evaluation.discipline or discipline,
        thresholds,
    )


def is_quality_document(document, discipline: Optional[str] = None,
                        thresholds: Optional[QualityThresholds] = None) -> bool:
    decision = evaluate_document(document, discipline, thresholds)
    return decision is not None and decision.is_sufficient
