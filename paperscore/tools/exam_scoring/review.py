"""Human review of computed scores and CSV export of final results."""

import csv
import io
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from . import state_machine
from .errors import NothingToExportError
from .models import (
    CriterionScore, QuestionScore, RubricSchema, ScoreUpdate, Submission, SubmissionStatus
)
from .reconcile import clamp_points, normalize_breakdown
from .store import RubricStore, SubmissionStore

LOG = logging.getLogger(__name__)

EXPORTABLE_STATUSES = (SubmissionStatus.SCORED, SubmissionStatus.REVIEWED)


def format_number(value: float) -> str:
    """Render 5.0 as '5' and 2.5 as '2.5'."""
    return ("%.2f" % float(value)).rstrip("0").rstrip(".")


class ReviewService:
    """Apply reviewer edits to scored submissions and export results."""

    def __init__(self, rubrics: RubricStore, submissions: SubmissionStore):
        self.rubrics = rubrics
        self.submissions = submissions

    def save_review(self, submission_id: str,
                    score_updates: Optional[Iterable[Union[ScoreUpdate, Dict[str, Any]]]] = None,
                    review_notes: Optional[str] = None,
                    reviewed_by: Optional[str] = None) -> Submission:
        """
        Apply a reviewer's edits and mark the submission ``reviewed``.

        Points are clamped to ``[0, max_points]``. Editing points rescales an
        existing criteria breakdown; editing the breakdown sets the points to
        its sum. Every edited score is marked ``manually_adjusted``.

        Args:
            submission_id: Submission to review
            score_updates: Edits keyed by question number
            review_notes: Reviewer notes (None leaves existing notes)
            reviewed_by: Reviewer name

        Returns:
            The saved submission

        Raises:
            NotFoundError: If the submission does not exist
            InvalidTransitionError: If the submission is not scored or reviewed
        """
        submission = self.submissions.get(submission_id)
        state_machine.check_transition(submission, state_machine.Trigger.SAVE_REVIEW)

        for raw_update in score_updates or []:
            update = raw_update if isinstance(raw_update, ScoreUpdate) else ScoreUpdate.model_validate(raw_update)
            score = submission.get_score(update.question_number)
            if score is None:
                LOG.warning("Submission %s has no score for question %s, ignoring update",
                            submission.id, update.question_number)
                continue
            self._apply_update(score, update)

        state_machine.save_review(submission, review_notes=review_notes, reviewed_by=reviewed_by)
        submission = self.submissions.save(submission)
        LOG.info("Saved review of submission %s: %s/%s",
                 submission.id, submission.total_score, submission.max_score)
        return submission

    @staticmethod
    def _apply_update(score: QuestionScore, update: ScoreUpdate) -> None:
        if update.criteria_breakdown is not None:
            breakdown = [
                CriterionScore(
                    criterion_text=c.criterion_text,
                    points=max(0.0, c.points),
                    max_points=max(0.0, c.max_points),
                    feedback=c.feedback,
                )
                for c in update.criteria_breakdown
            ]
            points = clamp_points(sum(c.points for c in breakdown), score.max_points)
            score.criteria_breakdown = normalize_breakdown(score.question_number, points, breakdown)
            score.points = points
            score.manually_adjusted = True
        elif update.points is not None:
            points = clamp_points(update.points, score.max_points)
            if score.criteria_breakdown:
                score.criteria_breakdown = normalize_breakdown(
                    score.question_number, points, score.criteria_breakdown
                )
            score.points = points
            score.manually_adjusted = True

        if update.feedback:
            score.feedback = update.feedback
        if update.flag_for_review is not None:
            score.flag_for_review = update.flag_for_review

    def get_summary_stats(self, rubric_id: Optional[str] = None) -> Dict[str, Any]:
        """Get scoring summary statistics."""
        submissions = self.submissions.list(rubric_id=rubric_id)
        scored = [s for s in submissions if s.status in EXPORTABLE_STATUSES]
        by_status: Dict[str, int] = {}
        for submission in submissions:
            by_status[submission.status.value] = by_status.get(submission.status.value, 0) + 1

        if not scored:
            return {"average": 0, "min": 0, "max": 0, "reviewed": 0,
                    "total": len(submissions), "by_status": by_status}

        percentages = [s.percentage for s in scored]
        return {
            "average": sum(percentages) / len(percentages),
            "min": min(percentages),
            "max": max(percentages),
            "reviewed": by_status.get(SubmissionStatus.REVIEWED.value, 0),
            "flagged": sum(1 for s in scored if any(q.flag_for_review for q in s.scores)),
            "total": len(submissions),
            "by_status": by_status,
        }

    # Export

    def export_rows(self, rubric_id: str) -> Tuple[List[str], List[List[str]]]:
        """
        Build the header and one row per scored or reviewed submission.

        Raises:
            NotFoundError: If the rubric does not exist
            NothingToExportError: If no submission qualifies
        """
        rubric = self.rubrics.get(rubric_id)
        submissions = [
            s for s in self.submissions.list(rubric_id=rubric_id) if s.status in EXPORTABLE_STATUSES
        ]
        if not submissions:
            raise NothingToExportError(f"No scored tests found to export for rubric {rubric.name}")

        criteria_counts = self._criteria_counts(rubric, submissions)

        question_headers: List[str] = []
        for question in rubric.questions:
            n = question.question_number
            question_headers.append(f"Q{n} Score")
            question_headers.append(f"Q{n} Feedback")
            for i in range(criteria_counts[n]):
                question_headers.append(f"Q{n} Criterion {i + 1}")
                question_headers.append(f"Q{n} Criterion {i + 1} Points")

        headers = [
            "Candidate Name",
            "Schema",
            "Status",
            "Total Score",
            "Max Score",
            "Percentage",
            *question_headers,
            "Review Notes",
            "Reviewed By",
            "Reviewed At",
            "Created At",
        ]

        rows = [self._row(rubric, submission, criteria_counts) for submission in submissions]
        return headers, rows

    @staticmethod
    def _criteria_counts(rubric: RubricSchema, submissions: List[Submission]) -> Dict[int, int]:
        """Largest breakdown size per question across the exported submissions."""
        counts = {}
        for question in rubric.questions:
            sizes = [
                len(score.criteria_breakdown)
                for score in (s.get_score(question.question_number) for s in submissions)
                if score is not None and score.criteria_breakdown
            ]
            counts[question.question_number] = max(sizes, default=0)
        return counts

    @staticmethod
    def _row(rubric: RubricSchema, submission: Submission, criteria_counts: Dict[int, int]) -> List[str]:
        schema = submission.rubric_snapshot or rubric
        question_data: List[str] = []
        for question in rubric.questions:
            n = question.question_number
            score = submission.get_score(n)
            question_data.append(
                f"{format_number(score.points)}/{format_number(score.max_points)}" if score else "-"
            )
            question_data.append(score.feedback if score and score.feedback else "-")

            breakdown = (score.criteria_breakdown or []) if score else []
            for i in range(criteria_counts[n]):
                if i < len(breakdown):
                    criterion = breakdown[i]
                    question_data.append(criterion.criterion_text)
                    question_data.append(
                        f"{format_number(criterion.points)}/{format_number(criterion.max_points)}"
                    )
                else:
                    question_data.extend(["", ""])

        return [
            submission.candidate_name or "Unnamed",
            f"{schema.name} v{schema.version}",
            submission.status.value,
            format_number(submission.total_score),
            format_number(submission.max_score),
            f"{submission.percentage:.1f}%",
            *question_data,
            submission.review_notes or "",
            submission.reviewed_by or "",
            submission.reviewed_at.isoformat() if submission.reviewed_at else "",
            submission.created_at.isoformat(),
        ]

    def export_csv(self, rubric_id: str) -> str:
        """Export the rubric's scored submissions as CSV text."""
        headers, rows = self.export_rows(rubric_id)
        buffer = io.StringIO()
        # QUOTE_MINIMAL quotes values containing a comma, quote or newline
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
        writer.writerow(headers)
        writer.writerows(rows)
        return buffer.getvalue()

    def write_csv(self, rubric_id: str, output_path: Path) -> Path:
        """Write the CSV export to ``output_path``. Nothing is written if there is nothing to export."""
        content = self.export_csv(rubric_id)
        output_path = Path(output_path)
        with open(output_path, 'w', newline='', encoding='utf-8') as f:
            f.write(content)
        LOG.info("Exported results for rubric %s to %s", rubric_id, output_path)
        return output_path
