"""Tests for exam scoring data models."""

import pytest
from pydantic import ValidationError

from paperscore.tools.exam_scoring.models import (
    Confidence, CriterionScore, ExtractedAnswer, Question, QuestionScore, RubricSchema,
    Submission, SubmissionStatus
)


def _score(number, points, max_points, breakdown=None):
    return QuestionScore(
        question_number=number,
        points=points,
        max_points=max_points,
        feedback="ok",
        confidence=Confidence.HIGH,
        criteria_breakdown=breakdown,
    )


def test_rubric_total_points(questions, guidelines):
    """Test that total points always follow the questions."""
    rubric = RubricSchema(name="Quiz", questions=questions, rubric_guidelines=guidelines)
    assert rubric.total_points == 15
    assert rubric.version == "1.0"

    rubric.questions = questions[:1]
    assert rubric.total_points == 5


def test_rubric_requires_questions(guidelines):
    """Test that a rubric without questions is rejected."""
    with pytest.raises(ValidationError):
        RubricSchema(name="Empty", questions=[], rubric_guidelines=guidelines)


def test_rubric_rejects_blank_name(questions, guidelines):
    with pytest.raises(ValidationError, match="must not be blank"):
        RubricSchema(name="   ", questions=questions, rubric_guidelines=guidelines)


def test_rubric_rejects_duplicate_question_numbers(questions, guidelines):
    duplicate = questions + [questions[0]]
    with pytest.raises(ValidationError, match="Duplicate question number 1"):
        RubricSchema(name="Quiz", questions=duplicate, rubric_guidelines=guidelines)


def test_negative_max_points_rejected():
    with pytest.raises(ValidationError):
        Question(question_number=1, question_text="Q", max_points=-1, evaluation_criteria="c")


def test_question_score_cannot_exceed_max():
    """Test the points <= max_points invariant."""
    with pytest.raises(ValidationError, match="exceed max"):
        _score(1, 6, 5)


def test_question_score_breakdown_must_match_points():
    """Test that a breakdown off by more than the tolerance is rejected."""
    breakdown = [
        CriterionScore(criterion_text="a", points=2, max_points=3),
        CriterionScore(criterion_text="b", points=1, max_points=2),
    ]
    with pytest.raises(ValidationError, match="criteria breakdown sums to"):
        _score(1, 4, 5, breakdown)

    # Within tolerance
    score = _score(1, 3.005, 5, breakdown)
    assert score.points == 3.005


def test_question_score_allows_all_zero_breakdown():
    """Test that an all-zero breakdown is kept even when points were awarded."""
    breakdown = [CriterionScore(criterion_text="a", points=0, max_points=3)]
    score = _score(1, 2, 5, breakdown)
    assert score.criteria_breakdown[0].points == 0


def test_submission_totals_and_percentage():
    """Test that totals are derived from the scores."""
    submission = Submission(
        rubric_id="r1",
        original_images=["page1.jpg"],
        scores=[_score(1, 4, 5), _score(2, 5.5, 10)],
    )
    assert submission.total_score == 9.5
    assert submission.max_score == 15
    assert submission.percentage == pytest.approx(63.333, rel=1e-3)
    assert submission.status == SubmissionStatus.PENDING
    assert submission.get_score(2).points == 5.5
    assert submission.get_score(3) is None


def test_submission_without_scores_has_zero_percentage():
    submission = Submission(rubric_id="r1", original_images=["page1.jpg"])
    assert submission.total_score == 0
    assert submission.percentage == 0


def test_submission_requires_images():
    with pytest.raises(ValidationError):
        Submission(rubric_id="r1", original_images=[])


def test_submission_rejects_duplicate_answers():
    with pytest.raises(ValidationError, match="unique per question number"):
        Submission(
            rubric_id="r1",
            original_images=["p.jpg"],
            extracted_answers=[
                ExtractedAnswer(question_number=1, student_answer="a"),
                ExtractedAnswer(question_number=1, student_answer="b"),
            ],
        )


def test_submission_serialization_roundtrip():
    """Test that a stored submission loads back with its computed totals."""
    submission = Submission(
        rubric_id="r1",
        original_images=["page1.jpg"],
        scores=[_score(1, 4, 5)],
    )
    data = submission.model_dump(mode='json')
    assert data['total_score'] == 4
    assert data['status'] == 'pending'

    loaded = Submission.model_validate(data)
    assert loaded.total_score == 4
    assert loaded.scores[0].confidence == Confidence.HIGH
