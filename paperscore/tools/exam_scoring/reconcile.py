"""Merge and reconciliation rules applied to adapter output.

Adapters are untrusted: page extractions are merged and reconciled against
the rubric's question list, and model scores are clamped and their criteria
breakdowns normalized before anything is stored.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .models import (
    BREAKDOWN_TOLERANCE, Confidence, CriterionAssessment, CriterionScore, ExtractedAnswer,
    PageExtraction, Question, QuestionScore, ScoringResponse
)

LOG = logging.getLogger(__name__)

PAGE_BREAK = "\n\n---PAGE BREAK---\n\n"
DEGRADED_FEEDBACK = "Error during scoring. Please review manually."


def merge_page_extractions(pages: List[PageExtraction]) -> PageExtraction:
    """
    Combine per-page extractions of a multi-page submission.

    Raw text is joined in page order with a page-break marker. Answers are
    merged by question number: non-empty text found on several pages is
    newline-joined (answers spanning pages), and an empty repeat never
    replaces text already found.

    Returns:
        A single extraction with answers sorted by question number
    """
    merged: Dict[int, str] = {}
    for page in pages:
        for answer in page.questions:
            text = answer.student_answer or ""
            existing = merged.get(answer.question_number)
            if existing is None:
                merged[answer.question_number] = text
            elif text.strip():
                merged[answer.question_number] = f"{existing}\n{text}" if existing.strip() else text

    return PageExtraction(
        raw_text=PAGE_BREAK.join(page.raw_text for page in pages),
        questions=[
            ExtractedAnswer(question_number=number, student_answer=merged[number])
            for number in sorted(merged)
        ],
    )


def reconcile_answers(questions: Iterable[Question],
                      answers: List[ExtractedAnswer]) -> List[ExtractedAnswer]:
    """
    Produce exactly one answer per rubric question.

    Answers for question numbers outside the rubric are dropped; rubric
    questions the adapter missed get an empty answer.
    """
    by_number = {a.question_number: a.student_answer for a in answers}
    expected = sorted(questions, key=lambda q: q.question_number)
    dropped = set(by_number) - {q.question_number for q in expected}
    if dropped:
        LOG.debug("Dropping answers for unexpected questions: %s", sorted(dropped))

    reconciled = []
    for question in expected:
        if question.question_number not in by_number:
            LOG.debug("No answer extracted for question %s, using empty answer", question.question_number)
        reconciled.append(ExtractedAnswer(
            question_number=question.question_number,
            student_answer=by_number.get(question.question_number, ""),
        ))
    return reconciled


def clamp_points(points: Optional[float], max_points: float) -> float:
    """Clamp a model-reported score into ``[0, max_points]``."""
    if points is None:
        return 0.0
    return max(0.0, min(float(points), max_points))


def normalize_breakdown(question_number: int, points: float,
                        breakdown: Optional[Sequence[Union[CriterionAssessment, CriterionScore]]]
                        ) -> Optional[List[CriterionScore]]:
    """
    Make a criteria breakdown agree with the (already clamped) question points.

    When the breakdown sum differs from ``points`` by more than the tolerance,
    every criterion is rescaled by ``points / breakdown_sum``. A breakdown that
    sums to zero cannot be rescaled; it is kept as all-zero and the discrepancy
    is logged.
    """
    if not breakdown:
        return None

    criteria = [
        CriterionScore(
            criterion_text=c.criterion_text,
            points=max(0.0, c.points),
            max_points=max(0.0, c.max_points),
            feedback=c.feedback,
        )
        for c in breakdown
    ]
    breakdown_sum = sum(c.points for c in criteria)
    if abs(breakdown_sum - points) <= BREAKDOWN_TOLERANCE:
        return criteria

    if breakdown_sum > 0:
        ratio = points / breakdown_sum
        LOG.info("Question %s: rescaling criteria breakdown %.2f -> %.2f",
                 question_number, breakdown_sum, points)
        for criterion in criteria:
            criterion.points = round(criterion.points * ratio, 4)
        # Push rounding drift into the last criterion
        drift = points - sum(c.points for c in criteria)
        criteria[-1].points = max(0.0, round(criteria[-1].points + drift, 4))
        return criteria

    LOG.warning("Question %s: criteria breakdown sums to 0 but %s points were awarded",
                question_number, points)
    for criterion in criteria:
        criterion.points = 0.0
    return criteria


def build_question_score(question: Question, response: ScoringResponse) -> QuestionScore:
    """Turn a raw scoring response into a stored score for ``question``."""
    points = clamp_points(response.points, question.max_points)
    if points != response.points:
        LOG.warning("Question %s: clamped model score %s to %s (max %s)",
                    question.question_number, response.points, points, question.max_points)

    breakdown = normalize_breakdown(question.question_number, points, response.criteria_breakdown)
    flag = response.flag_for_review
    if breakdown and points > 0 and sum(c.points for c in breakdown) == 0:
        flag = True

    return QuestionScore(
        question_number=question.question_number,
        points=points,
        max_points=question.max_points,
        feedback=response.feedback or "No feedback provided",
        reasoning=response.reasoning or None,
        confidence=response.confidence,
        flag_for_review=flag,
        manually_adjusted=False,
        criteria_breakdown=breakdown,
    )


def degraded_score(question: Question, error: BaseException) -> QuestionScore:
    """Placeholder score used when the scoring adapter fails for one question."""
    return QuestionScore(
        question_number=question.question_number,
        points=0.0,
        max_points=question.max_points,
        feedback=DEGRADED_FEEDBACK,
        reasoning=f"Scoring failed: {error}",
        confidence=Confidence.LOW,
        flag_for_review=True,
        manually_adjusted=False,
    )
