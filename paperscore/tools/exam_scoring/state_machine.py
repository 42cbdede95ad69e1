"""Submission lifecycle: status transitions and their side effects.

Every status change of a submission goes through this module. The transition
table below is the only place that decides which trigger is accepted in which
status; callers never compare status strings themselves.

    pending --begin_extraction--> processing(extraction) --complete_extraction--> extracted
    extracted --begin_scoring--> processing(scoring) --complete_scoring--> scored
    scored/reviewed --save_review--> reviewed
    pending/processing/extracted --fail--> error
    error --retry--> pending | extracted
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import InvalidTransitionError
from .models import (
    ExtractedAnswer, ProcessingPhase, QuestionScore, Submission, SubmissionStatus, utcnow
)

LOG = logging.getLogger(__name__)


class Trigger(str, Enum):
    BEGIN_EXTRACTION = "begin_extraction"
    COMPLETE_EXTRACTION = "complete_extraction"
    BEGIN_SCORING = "begin_scoring"
    COMPLETE_SCORING = "complete_scoring"
    FAIL = "fail"
    SAVE_REVIEW = "save_review"
    RETRY = "retry"


S = SubmissionStatus

_TRANSITIONS: Dict[Tuple[SubmissionStatus, Trigger], SubmissionStatus] = {
    (S.PENDING, Trigger.BEGIN_EXTRACTION): S.PROCESSING,
    (S.PROCESSING, Trigger.COMPLETE_EXTRACTION): S.EXTRACTED,
    (S.EXTRACTED, Trigger.BEGIN_SCORING): S.PROCESSING,
    (S.PROCESSING, Trigger.COMPLETE_SCORING): S.SCORED,
    (S.PENDING, Trigger.FAIL): S.ERROR,
    (S.PROCESSING, Trigger.FAIL): S.ERROR,
    (S.EXTRACTED, Trigger.FAIL): S.ERROR,
    (S.SCORED, Trigger.SAVE_REVIEW): S.REVIEWED,
    (S.REVIEWED, Trigger.SAVE_REVIEW): S.REVIEWED,
    # Real target (pending or extracted) is chosen by retry()
    (S.ERROR, Trigger.RETRY): S.PENDING,
}

# Completion triggers are only valid for the phase that is in flight
_REQUIRED_PHASE: Dict[Trigger, ProcessingPhase] = {
    Trigger.COMPLETE_EXTRACTION: ProcessingPhase.EXTRACTION,
    Trigger.COMPLETE_SCORING: ProcessingPhase.SCORING,
}


def can_transition(submission: Submission, trigger: Trigger) -> bool:
    """Return True if ``trigger`` is accepted in the submission's current state."""
    if (submission.status, trigger) not in _TRANSITIONS:
        return False
    required_phase = _REQUIRED_PHASE.get(trigger)
    return required_phase is None or submission.phase == required_phase


def check_transition(submission: Submission, trigger: Trigger) -> SubmissionStatus:
    """Return the target status for ``trigger`` or raise InvalidTransitionError."""
    if not can_transition(submission, trigger):
        status = submission.status.value
        if submission.status == S.PROCESSING and submission.phase:
            status = f"{status}/{submission.phase.value}"
        raise InvalidTransitionError(submission.id, status, trigger.value)
    return _TRANSITIONS[(submission.status, trigger)]


def _enter(submission: Submission, target: SubmissionStatus, trigger: Trigger,
           phase: Optional[ProcessingPhase] = None) -> None:
    previous = submission.status
    submission.status = target
    submission.phase = phase
    submission.updated_at = utcnow()
    if target != S.ERROR:
        submission.error_message = None
        submission.error_at = None
    LOG.info("Submission %s: %s -> %s (%s)", submission.id, previous.value, target.value, trigger.value)


def begin_extraction(submission: Submission) -> None:
    target = check_transition(submission, Trigger.BEGIN_EXTRACTION)
    _enter(submission, target, Trigger.BEGIN_EXTRACTION, ProcessingPhase.EXTRACTION)


def complete_extraction(submission: Submission, extracted_text: str,
                        extracted_answers: List[ExtractedAnswer]) -> None:
    target = check_transition(submission, Trigger.COMPLETE_EXTRACTION)
    submission.extracted_text = extracted_text
    submission.extracted_answers = list(extracted_answers)
    _enter(submission, target, Trigger.COMPLETE_EXTRACTION)


def begin_scoring(submission: Submission) -> None:
    target = check_transition(submission, Trigger.BEGIN_SCORING)
    _enter(submission, target, Trigger.BEGIN_SCORING, ProcessingPhase.SCORING)


def complete_scoring(submission: Submission, scores: List[QuestionScore]) -> None:
    target = check_transition(submission, Trigger.COMPLETE_SCORING)
    submission.scores = sorted(scores, key=lambda s: s.question_number)
    _enter(submission, target, Trigger.COMPLETE_SCORING)


def fail(submission: Submission, message: str) -> None:
    """Move a submission to ``error``. Extracted content is kept."""
    target = check_transition(submission, Trigger.FAIL)
    _enter(submission, target, Trigger.FAIL)
    submission.error_message = message
    submission.error_at = utcnow()


def save_review(submission: Submission, review_notes: Optional[str] = None,
                reviewed_by: Optional[str] = None) -> None:
    """Record review metadata. Score edits are applied by the review service."""
    target = check_transition(submission, Trigger.SAVE_REVIEW)
    if review_notes is not None:
        submission.review_notes = review_notes
    if reviewed_by:
        submission.reviewed_by = reviewed_by
    submission.reviewed_at = utcnow()
    _enter(submission, target, Trigger.SAVE_REVIEW)


def retry(submission: Submission, force_reextract: bool = False) -> SubmissionStatus:
    """
    Reset an errored submission so its pipeline can run again.

    Resumes at ``extracted`` when answers were already extracted, so only
    scoring is redone. Otherwise (or when ``force_reextract`` is set) the
    extraction output is discarded and the submission goes back to ``pending``.

    Returns:
        The status the submission was reset to
    """
    check_transition(submission, Trigger.RETRY)
    submission.scores = []
    if submission.extracted_answers and not force_reextract:
        target = S.EXTRACTED
    else:
        submission.extracted_text = ""
        submission.extracted_answers = []
        target = S.PENDING
    _enter(submission, target, Trigger.RETRY)
    return target
