"""Tests for merging extractions and normalizing model scores."""

import logging

import pytest

from paperscore.tools.exam_scoring.models import (
    Confidence, CriterionAssessment, ExtractedAnswer, Question, ScoringResponse
)
from paperscore.tools.exam_scoring.reconcile import (
    DEGRADED_FEEDBACK, PAGE_BREAK, build_question_score, clamp_points, degraded_score,
    merge_page_extractions, normalize_breakdown, reconcile_answers
)

from conftest import page


@pytest.fixture
def question():
    return Question(question_number=3, question_text="Name three planets", max_points=6,
                    evaluation_criteria="Two points per correct planet")


def test_merge_joins_raw_text_with_page_breaks():
    merged = merge_page_extractions([page("page one"), page("page two")])
    assert merged.raw_text == f"page one{PAGE_BREAK}page two"


def test_merge_concatenates_answers_spanning_pages():
    """Test that an answer continued on the next page is joined."""
    merged = merge_page_extractions([
        page("p1", {1: "Mitochondria produce", 2: "Yes"}),
        page("p2", {1: "energy for the cell"}),
    ])
    assert [a.question_number for a in merged.questions] == [1, 2]
    assert merged.questions[0].student_answer == "Mitochondria produce\nenergy for the cell"


def test_merge_never_lets_empty_text_replace_an_answer():
    merged = merge_page_extractions([
        page("p1", {1: "An answer"}),
        page("p2", {1: ""}),
        page("p3", {1: "   "}),
    ])
    assert merged.questions[0].student_answer == "An answer"


def test_merge_is_idempotent_for_identical_text():
    """Test that merging a single page returns its answers unchanged."""
    single = page("p1", {2: "b", 1: "a"})
    merged = merge_page_extractions([single])
    assert {a.question_number: a.student_answer for a in merged.questions} == {1: "a", 2: "b"}
    assert merge_page_extractions([merged]).questions == merged.questions


def test_reconcile_backfills_and_drops(questions):
    """Test exactly one answer per rubric question."""
    answers = [
        ExtractedAnswer(question_number=2, student_answer="Evaporation"),
        ExtractedAnswer(question_number=7, student_answer="stray"),
        ExtractedAnswer(question_number=-1, student_answer="unknown"),
    ]
    reconciled = reconcile_answers(questions, answers)
    assert [(a.question_number, a.student_answer) for a in reconciled] == [
        (1, ""), (2, "Evaporation")
    ]


@pytest.mark.parametrize("points,expected", [
    (-2, 0.0), (0, 0.0), (4.5, 4.5), (6, 6.0), (9, 6.0), (None, 0.0)
])
def test_clamp_points(points, expected):
    assert clamp_points(points, 6) == expected


def test_build_score_clamps_and_logs(question, caplog):
    with caplog.at_level(logging.WARNING):
        score = build_question_score(question, ScoringResponse(points=8, feedback="Great"))
    assert score.points == 6
    assert score.max_points == 6
    assert "clamped" in caplog.text


def test_build_score_rescales_breakdown(question):
    """Test that a breakdown disagreeing with the clamped total is rescaled."""
    response = ScoringResponse(
        points=4,
        criteria_breakdown=[
            CriterionAssessment(criterion_text="Mars", points=2, max_points=2),
            CriterionAssessment(criterion_text="Venus", points=2, max_points=2),
            CriterionAssessment(criterion_text="Pluto", points=2, max_points=2),
        ],
    )
    score = build_question_score(question, response)
    assert score.points == 4
    total = sum(c.points for c in score.criteria_breakdown)
    assert abs(total - 4) <= 0.01
    assert score.criteria_breakdown[0].points == pytest.approx(4 / 3, abs=1e-3)
    assert not score.flag_for_review


def test_build_score_keeps_matching_breakdown(question):
    response = ScoringResponse(
        points=4,
        criteria_breakdown=[
            CriterionAssessment(criterion_text="Mars", points=2, max_points=2),
            CriterionAssessment(criterion_text="Venus", points=2, max_points=2),
        ],
    )
    score = build_question_score(question, response)
    assert [c.points for c in score.criteria_breakdown] == [2, 2]


def test_build_score_zero_breakdown_is_flagged(question, caplog):
    """Test that an all-zero breakdown with awarded points is kept and flagged."""
    response = ScoringResponse(
        points=3,
        criteria_breakdown=[CriterionAssessment(criterion_text="Mars", points=0, max_points=2)],
    )
    with caplog.at_level(logging.WARNING):
        score = build_question_score(question, response)
    assert score.points == 3
    assert score.criteria_breakdown[0].points == 0
    assert score.flag_for_review
    assert "sums to 0" in caplog.text


def test_normalize_breakdown_clamps_negative_criteria():
    breakdown = [
        CriterionAssessment(criterion_text="a", points=-1, max_points=2),
        CriterionAssessment(criterion_text="b", points=2, max_points=2),
    ]
    normalized = normalize_breakdown(1, 2, breakdown)
    assert [c.points for c in normalized] == [0, 2]


def test_normalize_breakdown_empty():
    assert normalize_breakdown(1, 2, None) is None
    assert normalize_breakdown(1, 2, []) is None


def test_degraded_score(question):
    score = degraded_score(question, RuntimeError("rate limited"))
    assert score.points == 0
    assert score.max_points == 6
    assert score.feedback == DEGRADED_FEEDBACK
    assert score.reasoning == "Scoring failed: rate limited"
    assert score.confidence == Confidence.LOW
    assert score.flag_for_review
