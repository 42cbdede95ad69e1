"""Scoring of scanned test papers against rubrics using vision and reasoning models."""

from .errors import (
    AdapterError, BatchCancelled, ConcurrentModificationError, ConsistencyError,
    InvalidTransitionError, NothingToExportError, NotFoundError, ScoringError
)
from .models import (
    Confidence, CriterionScore, ExtractedAnswer, Question, QuestionScore, RubricGuidelines,
    RubricSchema, ScoreUpdate, Submission, SubmissionStatus
)
from .orchestrator import BackgroundJob, BatchOrchestrator, BatchOutcome, CancellationToken
from .review import ReviewService
from .rubric_parser import RubricParser
from .store import RubricStore, SubmissionStore, open_stores

__all__ = [
    'AdapterError',
    'BatchCancelled',
    'ConcurrentModificationError',
    'ConsistencyError',
    'InvalidTransitionError',
    'NothingToExportError',
    'NotFoundError',
    'ScoringError',
    'Confidence',
    'CriterionScore',
    'ExtractedAnswer',
    'Question',
    'QuestionScore',
    'RubricGuidelines',
    'RubricSchema',
    'ScoreUpdate',
    'Submission',
    'SubmissionStatus',
    'BackgroundJob',
    'BatchOrchestrator',
    'BatchOutcome',
    'CancellationToken',
    'ReviewService',
    'RubricParser',
    'RubricStore',
    'SubmissionStore',
    'open_stores',
]
