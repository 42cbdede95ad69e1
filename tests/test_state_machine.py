"""Tests for the submission lifecycle."""

import pytest

from paperscore.tools.exam_scoring import state_machine
from paperscore.tools.exam_scoring.errors import InvalidTransitionError
from paperscore.tools.exam_scoring.models import (
    Confidence, ExtractedAnswer, ProcessingPhase, QuestionScore, Submission, SubmissionStatus
)
from paperscore.tools.exam_scoring.state_machine import Trigger


def _submission(**kwargs):
    return Submission(rubric_id="r1", original_images=["p1.jpg"], **kwargs)


def _answers():
    return [ExtractedAnswer(question_number=1, student_answer="Plants use light")]


def _scores():
    return [
        QuestionScore(question_number=2, points=3, max_points=10, feedback="ok", confidence=Confidence.LOW),
        QuestionScore(question_number=1, points=4, max_points=5, feedback="ok", confidence=Confidence.HIGH),
    ]


def test_happy_path():
    """Test pending -> processing -> extracted -> processing -> scored -> reviewed."""
    submission = _submission()

    state_machine.begin_extraction(submission)
    assert submission.status == SubmissionStatus.PROCESSING
    assert submission.phase == ProcessingPhase.EXTRACTION

    state_machine.complete_extraction(submission, "raw text", _answers())
    assert submission.status == SubmissionStatus.EXTRACTED
    assert submission.phase is None
    assert submission.extracted_text == "raw text"

    state_machine.begin_scoring(submission)
    assert submission.phase == ProcessingPhase.SCORING

    state_machine.complete_scoring(submission, _scores())
    assert submission.status == SubmissionStatus.SCORED
    assert [s.question_number for s in submission.scores] == [1, 2]

    state_machine.save_review(submission, review_notes="checked", reviewed_by="ms. lee")
    assert submission.status == SubmissionStatus.REVIEWED
    assert submission.reviewed_by == "ms. lee"
    assert submission.reviewed_at is not None

    # Reviewing again is allowed
    state_machine.save_review(submission, review_notes="rechecked")
    assert submission.review_notes == "rechecked"
    assert submission.reviewed_by == "ms. lee"


@pytest.mark.parametrize("status,trigger", [
    (SubmissionStatus.PENDING, Trigger.BEGIN_SCORING),
    (SubmissionStatus.PENDING, Trigger.SAVE_REVIEW),
    (SubmissionStatus.EXTRACTED, Trigger.BEGIN_EXTRACTION),
    (SubmissionStatus.SCORED, Trigger.BEGIN_SCORING),
    (SubmissionStatus.SCORED, Trigger.FAIL),
    (SubmissionStatus.REVIEWED, Trigger.RETRY),
    (SubmissionStatus.ERROR, Trigger.SAVE_REVIEW),
])
def test_rejected_transitions(status, trigger):
    """Test that triggers outside the transition table are rejected."""
    submission = _submission(status=status)
    assert not state_machine.can_transition(submission, trigger)
    with pytest.raises(InvalidTransitionError):
        state_machine.check_transition(submission, trigger)


def test_completion_requires_matching_phase():
    """Test that scoring cannot complete while extraction is in flight."""
    submission = _submission()
    state_machine.begin_extraction(submission)

    with pytest.raises(InvalidTransitionError, match="processing/extraction"):
        state_machine.complete_scoring(submission, _scores())
    assert submission.status == SubmissionStatus.PROCESSING


def test_fail_keeps_extracted_content():
    """Test that failing keeps extraction output and records the error."""
    submission = _submission()
    state_machine.begin_extraction(submission)
    state_machine.complete_extraction(submission, "raw", _answers())
    state_machine.begin_scoring(submission)

    state_machine.fail(submission, "model timeout")
    assert submission.status == SubmissionStatus.ERROR
    assert submission.phase is None
    assert submission.error_message == "model timeout"
    assert submission.error_at is not None
    assert submission.extracted_answers == _answers()


def test_retry_resumes_at_scoring_when_answers_exist():
    """Test that a retry after a scoring failure skips extraction."""
    submission = _submission(status=SubmissionStatus.ERROR, extracted_text="raw",
                             extracted_answers=_answers(), error_message="boom")

    target = state_machine.retry(submission)
    assert target == SubmissionStatus.EXTRACTED
    assert submission.status == SubmissionStatus.EXTRACTED
    assert submission.error_message is None
    assert submission.extracted_answers == _answers()
    assert submission.scores == []


def test_retry_without_answers_goes_back_to_pending():
    submission = _submission(status=SubmissionStatus.ERROR, error_message="boom")
    assert state_machine.retry(submission) == SubmissionStatus.PENDING


def test_retry_with_forced_reextraction_discards_answers():
    submission = _submission(status=SubmissionStatus.ERROR, extracted_text="raw",
                             extracted_answers=_answers())

    assert state_machine.retry(submission, force_reextract=True) == SubmissionStatus.PENDING
    assert submission.extracted_answers == []
    assert submission.extracted_text == ""


def test_invalid_transition_message():
    submission = _submission(status=SubmissionStatus.SCORED)
    with pytest.raises(InvalidTransitionError) as exc_info:
        state_machine.begin_extraction(submission)
    assert "begin extraction" in str(exc_info.value)
    assert "'scored'" in str(exc_info.value)
