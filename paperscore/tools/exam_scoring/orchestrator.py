"""Drive extraction and scoring across questions and submissions.

Adapter calls are dispatched in fixed-size windows: every call in a window
runs concurrently and the next window is only dispatched once the whole
previous window has resolved. This caps simultaneous calls to the AI
provider without a separate rate limiter.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import yaml
from tqdm import tqdm

from paperscore.libs.config_loader import ConfigType, get_config
from . import state_machine
from .errors import (
    AdapterError, BatchCancelled, ConcurrentModificationError, NotFoundError, ScoringError
)
from .extractor import ExtractionService
from .models import (
    ExtractedAnswer, PageExtraction, Question, QuestionScore, RubricGuidelines, RubricSchema,
    Submission, SubmissionStatus
)
from .reconcile import build_question_score, degraded_score, merge_page_extractions, reconcile_answers
from .scorer import ScoringService
from .store import RubricStore, SubmissionStore

LOG = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')

RUBRIC_POLICIES = ('live', 'snapshot')


class CancellationToken:
    """Cooperative cancellation flag checked before every adapter call."""

    def __init__(self):
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = "Cancelled") -> None:
        if self.reason is None:
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self.reason is not None:
            raise BatchCancelled(self.reason)


def _check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


@dataclass
class BatchOutcome:
    """Result of running one submission inside a multi-submission batch."""
    submission_id: str
    success: bool
    status: str
    total_score: float = 0
    max_score: float = 0
    error_message: Optional[str] = None
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        data = {
            'submission_id': self.submission_id,
            'success': self.success,
            'status': self.status,
            'total_score': self.total_score,
            'max_score': self.max_score,
            'timestamp': self.timestamp,
        }
        if self.error_message:
            data['error_message'] = self.error_message
        return data


@dataclass
class BackgroundJob:
    """Handle on a submission pipeline running as an asyncio task."""
    submission_id: str
    operation: str
    task: asyncio.Task
    token: CancellationToken = field(default_factory=CancellationToken)

    def cancel(self, reason: str = "Cancelled") -> None:
        """Ask the job to stop at its next suspension point."""
        self.token.cancel(reason)

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Submission:
        return await self.task


class BatchOrchestrator:
    """Run extraction and scoring for submissions with bounded concurrency."""

    def __init__(self, rubrics: RubricStore, submissions: SubmissionStore,
                 extractor: ExtractionService, scorer: ScoringService,
                 configs: Optional[ConfigType] = None,
                 question_window: Optional[int] = None,
                 image_window: Optional[int] = None,
                 submission_window: Optional[int] = None,
                 rubric_policy: Optional[str] = None,
                 show_progress: Optional[bool] = None):
        """
        Initialize the orchestrator.

        Args:
            rubrics: Rubric store
            submissions: Submission store
            extractor: Extraction capability (vision model or a fake)
            scorer: Scoring capability (reasoning model or a fake)
            configs: Configuration dictionary supplying defaults for the options below
            question_window: Questions scored concurrently per window
            image_window: Page images extracted concurrently per window
            submission_window: Submissions run concurrently per window in batch operations
            rubric_policy: 'live' or 'snapshot'
            show_progress: Show a tqdm progress bar for multi-submission batches
        """
        configs = configs or {}
        self.rubrics = rubrics
        self.submissions = submissions
        self.extractor = extractor
        self.scorer = scorer

        self.question_window = self._window(
            question_window, get_config("batch.question_window", configs, default=2))
        self.image_window = self._window(
            image_window, get_config("batch.image_window", configs, default=3))
        self.submission_window = self._window(
            submission_window, get_config("batch.submission_window", configs, default=2))
        self.rubric_policy = rubric_policy or get_config("scoring.rubric_policy", configs, default="live")
        if self.rubric_policy not in RUBRIC_POLICIES:
            raise ValueError(f"Unknown rubric policy {self.rubric_policy!r}, expected one of {RUBRIC_POLICIES}")
        if show_progress is None:
            show_progress = bool(get_config("batch.show_progress", configs, default=False))
        self.show_progress = show_progress

        LOG.debug("BatchOrchestrator initialized with windows question=%d image=%d submission=%d, policy=%s",
                  self.question_window, self.image_window, self.submission_window, self.rubric_policy)

    @staticmethod
    def _window(explicit: Optional[int], configured: Any) -> int:
        size = int(explicit if explicit is not None else configured)
        if size < 1:
            raise ValueError(f"Batch window must be at least 1, got {size}")
        return size

    # Windowed dispatch

    async def _run_windowed(self, items: Sequence[T], worker: Callable[[T], Awaitable[R]],
                            window: int, token: Optional[CancellationToken] = None) -> List[R]:
        """Run ``worker`` over ``items`` window by window, keeping input order."""
        results: List[R] = []
        for start in range(0, len(items), window):
            _check(token)
            chunk = items[start:start + window]
            LOG.debug("Dispatching window %d-%d of %d", start + 1, start + len(chunk), len(items))
            results.extend(await asyncio.gather(*(worker(item) for item in chunk)))
        return results

    # Rubric resolution

    def resolve_rubric(self, submission: Submission) -> RubricSchema:
        """The rubric a submission is extracted and scored against."""
        if self.rubric_policy == 'snapshot' and submission.rubric_snapshot is not None:
            return submission.rubric_snapshot
        return self.rubrics.get(submission.rubric_id)

    def create_submission(self, rubric_id: str, images: List[str],
                          candidate_name: Optional[str] = None) -> Submission:
        """Register page images against a rubric as a new ``pending`` submission."""
        rubric = self.rubrics.get(rubric_id)
        snapshot = rubric if self.rubric_policy == 'snapshot' else None
        return self.submissions.create(rubric.id, images, candidate_name, rubric_snapshot=snapshot)

    # Question level

    async def _score_one(self, question: Question, student_answer: str,
                         guidelines: RubricGuidelines,
                         token: Optional[CancellationToken] = None) -> QuestionScore:
        _check(token)
        try:
            response = await self.scorer.score(question, student_answer, guidelines)
            return build_question_score(question, response)
        except Exception as e:  # pylint: disable=broad-except
            LOG.error("Error scoring question %s: %s", question.question_number, e)
            LOG.debug("Scoring failure traceback: %s", traceback.format_exc())
            return degraded_score(question, e)

    async def score_answers(self, questions: List[Question], answers: List[ExtractedAnswer],
                            guidelines: RubricGuidelines,
                            token: Optional[CancellationToken] = None) -> List[QuestionScore]:
        """
        Score every rubric question against the extracted answers.

        Questions are dispatched in rubric order, ``question_window`` at a time.
        A failing question gets a degraded score instead of failing the batch.

        Returns:
            Exactly one score per rubric question, sorted by question number
        """
        answers_by_number = {a.question_number: a.student_answer for a in answers}

        async def score_question(question: Question) -> QuestionScore:
            answer = answers_by_number.get(question.question_number, "")
            return await self._score_one(question, answer, guidelines, token)

        scores = await self._run_windowed(list(questions), score_question, self.question_window, token)
        scores.sort(key=lambda s: s.question_number)
        return scores

    async def extract_pages(self, images: List[str], questions: List[Question],
                            token: Optional[CancellationToken] = None) -> PageExtraction:
        """
        Extract every page image and reconcile the answers with the rubric.

        Any failing page fails the whole extraction.

        Returns:
            Merged extraction with exactly one answer per rubric question
        """
        async def extract_page(image: str) -> PageExtraction:
            _check(token)
            return await self.extractor.extract([image], questions)

        pages = await self._run_windowed(list(images), extract_page, self.image_window, token)
        merged = merge_page_extractions(pages)
        return PageExtraction(
            raw_text=merged.raw_text,
            questions=reconcile_answers(questions, merged.questions),
        )

    # Submission level

    def _record_failure(self, submission: Submission, message: str) -> None:
        state_machine.fail(submission, message)
        try:
            self.submissions.save(submission)
        except (ConcurrentModificationError, NotFoundError) as e:
            LOG.error("Could not record failure of submission %s: %s", submission.id, e)

    async def process_submission(self, submission_id: str,
                                 token: Optional[CancellationToken] = None) -> Submission:
        """
        Extract answers for a ``pending`` submission.

        Raises:
            NotFoundError: If the submission or its rubric does not exist
            InvalidTransitionError: If the submission is not ``pending``
            AdapterError: If extraction failed (the submission is now ``error``)
            BatchCancelled: If the token was cancelled (the submission is now ``error``)
        """
        submission = self.submissions.get(submission_id)
        state_machine.check_transition(submission, state_machine.Trigger.BEGIN_EXTRACTION)
        try:
            rubric = self.resolve_rubric(submission)
        except NotFoundError as e:
            self._record_failure(submission, str(e))
            raise

        state_machine.begin_extraction(submission)
        submission = self.submissions.save(submission)
        LOG.info("Extracting %d page(s) for submission %s", len(submission.original_images), submission.id)

        try:
            extraction = await self.extract_pages(submission.original_images, rubric.questions, token)
        except (BatchCancelled, asyncio.CancelledError) as e:
            self._record_failure(submission, str(e) or "Cancelled")
            raise
        except Exception as e:  # pylint: disable=broad-except
            message = str(e) or e.__class__.__name__
            LOG.error("Extraction failed for submission %s: %s", submission.id, message)
            self._record_failure(submission, message)
            if isinstance(e, AdapterError):
                raise
            raise AdapterError(message, e) from e

        state_machine.complete_extraction(submission, extraction.raw_text, extraction.questions)
        submission = self.submissions.save(submission)
        LOG.info("Extraction completed for submission %s", submission.id)
        return submission

    async def score_submission(self, submission_id: str,
                               token: Optional[CancellationToken] = None) -> Submission:
        """
        Score an ``extracted`` submission.

        Per-question adapter failures become degraded scores; the submission
        only moves to ``error`` on cancellation or an unexpected failure.

        Raises:
            NotFoundError: If the submission or its rubric does not exist
            InvalidTransitionError: If the submission is not ``extracted``
            BatchCancelled: If the token was cancelled (the submission is now ``error``)
        """
        submission = self.submissions.get(submission_id)
        state_machine.check_transition(submission, state_machine.Trigger.BEGIN_SCORING)
        try:
            rubric = self.resolve_rubric(submission)
        except NotFoundError as e:
            self._record_failure(submission, str(e))
            raise

        state_machine.begin_scoring(submission)
        submission = self.submissions.save(submission)
        LOG.info("Scoring %d question(s) for submission %s", len(rubric.questions), submission.id)

        try:
            scores = await self.score_answers(
                rubric.questions, submission.extracted_answers, rubric.rubric_guidelines, token
            )
        except (BatchCancelled, asyncio.CancelledError) as e:
            self._record_failure(submission, str(e) or "Cancelled")
            raise
        except Exception as e:  # pylint: disable=broad-except
            message = str(e) or e.__class__.__name__
            LOG.error("Scoring failed for submission %s: %s", submission.id, message)
            self._record_failure(submission, message)
            raise

        state_machine.complete_scoring(submission, scores)
        submission = self.submissions.save(submission)
        flagged = sum(1 for s in submission.scores if s.flag_for_review)
        LOG.info("Scoring completed for submission %s: %s/%s (%d flagged)",
                 submission.id, submission.total_score, submission.max_score, flagged)
        return submission

    async def run_pipeline(self, submission_id: str,
                           token: Optional[CancellationToken] = None) -> Submission:
        """Run whatever is left of extraction and scoring for a submission."""
        submission = self.submissions.get(submission_id)
        if submission.status == SubmissionStatus.PENDING:
            submission = await self.process_submission(submission_id, token)
        return await self.score_submission(submission.id, token)

    async def retry_submission(self, submission_id: str, force_reextract: bool = False,
                               run: bool = True,
                               token: Optional[CancellationToken] = None) -> Submission:
        """
        Retry an ``error`` submission.

        Resumes at scoring when answers were already extracted, unless
        ``force_reextract`` is set. With ``run`` the remaining steps run
        immediately; otherwise the submission is only reset.
        """
        submission = self.submissions.get(submission_id)
        target = state_machine.retry(submission, force_reextract=force_reextract)
        submission = self.submissions.save(submission)
        LOG.info("Retrying submission %s from %s", submission.id, target.value)
        if not run:
            return submission
        return await self.run_pipeline(submission.id, token)

    # Multi-submission batches

    async def _run_many(self, submission_ids: List[str],
                        operation: Callable[[str, Optional[CancellationToken]], Awaitable[Submission]],
                        desc: str, token: Optional[CancellationToken] = None) -> List[BatchOutcome]:
        progress = tqdm(total=len(submission_ids), desc=desc, disable=not self.show_progress)

        async def run_one(submission_id: str) -> BatchOutcome:
            try:
                submission = await operation(submission_id, token)
                outcome = BatchOutcome(
                    submission_id=submission_id,
                    success=True,
                    status=submission.status.value,
                    total_score=submission.total_score,
                    max_score=submission.max_score,
                )
            except BatchCancelled:
                raise
            except ScoringError as e:
                LOG.warning("Failed: %s - %s", submission_id, e)
                outcome = BatchOutcome(
                    submission_id=submission_id,
                    success=False,
                    status=self._current_status(submission_id),
                    error_message=str(e),
                )
            except Exception as e:  # pylint: disable=broad-except
                LOG.error("Unexpected error for submission %s: %s %s",
                          submission_id, e, traceback.format_exc())
                outcome = BatchOutcome(
                    submission_id=submission_id,
                    success=False,
                    status=self._current_status(submission_id),
                    error_message=str(e) or e.__class__.__name__,
                )
            progress.update(1)
            return outcome

        try:
            return await self._run_windowed(submission_ids, run_one, self.submission_window, token)
        finally:
            progress.close()

    def _current_status(self, submission_id: str) -> str:
        try:
            return self.submissions.get(submission_id).status.value
        except NotFoundError:
            return "missing"

    async def process_many(self, submission_ids: List[str],
                           token: Optional[CancellationToken] = None) -> List[BatchOutcome]:
        """Extract answers for many submissions, ``submission_window`` at a time."""
        return await self._run_many(submission_ids, self.process_submission, "Extracting submissions", token)

    async def score_many(self, submission_ids: List[str],
                         token: Optional[CancellationToken] = None) -> List[BatchOutcome]:
        """Score many submissions, ``submission_window`` at a time."""
        return await self._run_many(submission_ids, self.score_submission, "Scoring submissions", token)

    async def run_many(self, submission_ids: List[str],
                       token: Optional[CancellationToken] = None) -> List[BatchOutcome]:
        """Run the remaining pipeline for many submissions."""
        return await self._run_many(submission_ids, self.run_pipeline, "Grading submissions", token)

    # Background work

    def start_background(self, submission_id: str, operation: str = "pipeline") -> BackgroundJob:
        """
        Start a submission operation as an asyncio task.

        Must be called from a running event loop.

        Args:
            submission_id: Submission to work on
            operation: 'process', 'score' or 'pipeline'

        Returns:
            A BackgroundJob whose ``cancel()`` stops the work at the next adapter call
        """
        operations = {
            'process': self.process_submission,
            'score': self.score_submission,
            'pipeline': self.run_pipeline,
        }
        if operation not in operations:
            raise ValueError(f"Unknown operation {operation!r}, expected one of {sorted(operations)}")

        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(
            operations[operation](submission_id, token),
            name=f"{operation}:{submission_id}",
        )

        def log_result(finished: asyncio.Task) -> None:
            if finished.cancelled():
                LOG.warning("Background %s for %s was cancelled", operation, submission_id)
            elif finished.exception() is not None:
                LOG.error("Background %s for %s failed: %s", operation, submission_id, finished.exception())
            else:
                LOG.info("Background %s for %s finished", operation, submission_id)

        task.add_done_callback(log_result)
        return BackgroundJob(submission_id=submission_id, operation=operation, task=task, token=token)

    def save_summary(self, outcomes: List[BatchOutcome], output_path: Path) -> None:
        """
        Save a batch summary to a YAML file.

        Args:
            outcomes: Outcomes of a multi-submission batch
            output_path: Path to save summary file
        """
        successful = [o for o in outcomes if o.success]
        failed = [o for o in outcomes if not o.success]

        summary = {
            'batch_summary': {
                'timestamp': datetime.now().isoformat(),
                'total_submissions': len(outcomes),
                'successful': len(successful),
                'failed': len(failed),
                'average_score': sum(o.total_score for o in successful) / len(successful) if successful else 0,
            },
            'submissions': [o.to_dict() for o in outcomes]
        }

        with open(output_path, 'w') as f:
            yaml.dump(summary, f, default_flow_style=False, sort_keys=False)

        LOG.info(f"Summary saved to {output_path}")
