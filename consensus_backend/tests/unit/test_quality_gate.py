from types import SimpleNamespace

import pytest

from consensus_backend.services.quality_gate import (
    QualityThresholds,
    calculate_critical_score,
    calculate_weighted_score,
    check_document_quality,
    evaluate_document,
    is_quality_document,
)
from consensus_backend.services.rubrics import DEFAULT_DISCIPLINE, get_rubric
from consensus_backend.services.topic_reader import LatestEvaluation


STRONG = {"结构": 8, "逻辑": 8, "观点": 8, "证据": 8, "引用": 8}


def test_strong_document_is_sufficient():
    decision = check_document_quality(STRONG)

    assert decision.is_sufficient is True
    assert decision.overall_score == pytest.approx(8.0)
    assert decision.critical_score == pytest.approx(8.0)
    assert decision.reasons == []
    assert decision.suggestions == []


def test_reasoning_key_and_non_numeric_values_are_ignored():
    scores = dict(STRONG, _reasoning={"观点": "well argued"}, 备注="n/a", 标记=True)
    decision = check_document_quality(scores)

    assert decision.is_sufficient is True
    assert decision.overall_score == pytest.approx(8.0)


def test_weak_document_lists_every_failed_check():
    decision = check_document_quality({"结构": 2, "逻辑": 1, "观点": 1, "证据": 1, "引用": 1})

    assert decision.is_sufficient is False
    assert len(decision.reasons) == 4
    assert len(decision.suggestions) == 4


def test_missing_viewpoint_dimension_fails_viewpoint_check():
    scores = {"结构": 9, "逻辑": 9, "证据": 9, "引用": 9}
    decision = check_document_quality(scores)

    assert decision.is_sufficient is False
    assert any("Viewpoint" in reason for reason in decision.reasons)


def test_empty_scores_are_insufficient():
    decision = check_document_quality({})

    assert decision.is_sufficient is False
    assert decision.overall_score == 0.0


def test_weighted_score_only_uses_present_dimensions():
    rubric = get_rubric(DEFAULT_DISCIPLINE)
    assert calculate_weighted_score({"逻辑": 6.0, "观点": 10.0}, rubric) == pytest.approx(8.0)
    assert calculate_weighted_score({"未知": 10.0}, rubric) == 0.0


def test_critical_score_averages_present_critical_dimensions():
    rubric = get_rubric("历史")
    assert calculate_critical_score({"观点": 6.0, "史料": 0.0, "结构": 10.0}, rubric) == pytest.approx(3.0)


def test_discipline_rubric_changes_critical_dimensions():
    scores = {"结构": 6, "逻辑": 6, "观点": 6, "数据": 1, "引用": 6}

    assert check_document_quality(scores).is_sufficient is True
    science = check_document_quality(scores, discipline="科学")
    assert science.critical_score == pytest.approx((6 + 6 + 1) / 3)


def test_unknown_discipline_uses_default_rubric():
    assert check_document_quality(STRONG, "天文").to_dict() == check_document_quality(STRONG).to_dict()


def test_custom_thresholds():
    strict = QualityThresholds(overall=9.0)
    decision = check_document_quality(STRONG, thresholds=strict)

    assert decision.is_sufficient is False
    assert len(decision.reasons) == 1


@pytest.mark.parametrize("dimension", ["结构", "逻辑", "观点", "证据", "引用"])
@pytest.mark.parametrize("base", [1, 3, 5])
def test_raising_one_dimension_never_flips_sufficient_to_insufficient(dimension, base):
    scores = {"结构": base, "逻辑": base, "观点": base, "证据": base, "引用": base}
    previous = check_document_quality(scores).is_sufficient

    for value in range(base + 1, 11):
        scores[dimension] = value
        current = check_document_quality(scores).is_sufficient
        assert not (previous and not current)
        previous = current


def test_evaluate_document_without_evaluation_returns_none():
    document = SimpleNamespace(latest_evaluation=None)

    assert evaluate_document(document) is None
    assert is_quality_document(document) is False


def test_evaluation_discipline_overrides_topic_discipline():
    scores = {"结构": 6, "逻辑": 6, "观点": 6, "数据": 1, "引用": 6, "证据": 6}
    document = SimpleNamespace(latest_evaluation=LatestEvaluation(scores=scores, discipline="科学"))

    decision = evaluate_document(document, discipline="文学")

    assert decision.critical_score == pytest.approx((6 + 6 + 1) / 3)
