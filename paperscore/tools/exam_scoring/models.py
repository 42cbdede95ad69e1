"""Pydantic models for rubrics, submissions and scores."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

# Allowed disagreement between a criteria breakdown and its question total
BREAKDOWN_TOLERANCE = 0.01


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    SCORED = "scored"
    REVIEWED = "reviewed"
    ERROR = "error"


class ProcessingPhase(str, Enum):
    """Which step is in flight while a submission is ``processing``."""
    EXTRACTION = "extraction"
    SCORING = "scoring"


class Question(BaseModel):
    """Single question of a rubric."""
    question_number: int = Field(description="Number of the question on the paper")
    question_text: str = Field(description="The question as printed")
    max_points: float = Field(ge=0, description="Maximum points for this question")
    evaluation_criteria: str = Field(description="What a good answer must contain")
    sample_answer: Optional[str] = Field(default=None, description="Optional model answer")


class RubricGuidelines(BaseModel):
    """Rubric-wide guidance on awarding credit."""
    full_credit: str = Field(description="When to award full credit")
    partial_credit: str = Field(description="When to award partial credit")
    no_credit: str = Field(description="When to award no credit")


class RubricSchema(BaseModel):
    """A grading rubric: ordered questions plus credit guidelines."""
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    version: str = "1.0"
    description: Optional[str] = None
    questions: List[Question] = Field(min_length=1)
    rubric_guidelines: RubricGuidelines
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('name')
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Rubric name must not be blank")
        return value

    @field_validator('questions')
    @classmethod
    def _unique_question_numbers(cls, questions: List[Question]) -> List[Question]:
        seen = set()
        for question in questions:
            if question.question_number in seen:
                raise ValueError(f"Duplicate question number {question.question_number}")
            seen.add(question.question_number)
        return questions

    @computed_field
    @property
    def total_points(self) -> float:
        return sum(q.max_points for q in self.questions)

    def get_question(self, question_number: int) -> Optional[Question]:
        for question in self.questions:
            if question.question_number == question_number:
                return question
        return None


class ExtractedAnswer(BaseModel):
    """Answer text read from the paper for one question."""
    question_number: int = Field(description="Question number as written on the paper, -1 if unknown")
    student_answer: str = Field(default="", description="The student's answer, empty if blank")


class CriterionScore(BaseModel):
    """Points awarded for one sub-criterion of a question."""
    criterion_text: str
    points: float = Field(ge=0)
    max_points: float = Field(ge=0)
    feedback: Optional[str] = None


class QuestionScore(BaseModel):
    """Score and feedback for one question of a submission."""
    question_number: int
    points: float = Field(ge=0)
    max_points: float = Field(ge=0)
    feedback: str
    reasoning: Optional[str] = None
    confidence: Confidence
    flag_for_review: bool = False
    manually_adjusted: bool = False
    criteria_breakdown: Optional[List[CriterionScore]] = None

    @model_validator(mode='after')
    def _check_consistency(self) -> 'QuestionScore':
        if self.points > self.max_points:
            raise ValueError(
                f"Question {self.question_number}: points {self.points} exceed max {self.max_points}"
            )
        if self.criteria_breakdown:
            breakdown_sum = sum(c.points for c in self.criteria_breakdown)
            # An all-zero breakdown means the points were never allocated to criteria
            if breakdown_sum > 0 and abs(breakdown_sum - self.points) > BREAKDOWN_TOLERANCE:
                raise ValueError(
                    f"Question {self.question_number}: criteria breakdown sums to "
                    f"{breakdown_sum}, expected {self.points}"
                )
        return self


class Submission(BaseModel):
    """One candidate's test paper and everything derived from it."""
    id: str = Field(default_factory=new_id)
    rubric_id: str
    candidate_name: Optional[str] = None
    original_images: List[str] = Field(min_length=1)
    extracted_text: str = ""
    extracted_answers: List[ExtractedAnswer] = Field(default_factory=list)
    scores: List[QuestionScore] = Field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.PENDING
    phase: Optional[ProcessingPhase] = None
    error_message: Optional[str] = None
    error_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rubric_snapshot: Optional[RubricSchema] = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('extracted_answers')
    @classmethod
    def _unique_answers(cls, answers: List[ExtractedAnswer]) -> List[ExtractedAnswer]:
        numbers = [a.question_number for a in answers]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Extracted answers must be unique per question number")
        return answers

    @field_validator('scores')
    @classmethod
    def _unique_scores(cls, scores: List[QuestionScore]) -> List[QuestionScore]:
        numbers = [s.question_number for s in scores]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Scores must be unique per question number")
        return scores

    @computed_field
    @property
    def total_score(self) -> float:
        return sum(s.points for s in self.scores)

    @computed_field
    @property
    def max_score(self) -> float:
        return sum(s.max_points for s in self.scores)

    @property
    def percentage(self) -> float:
        """Calculate percentage score."""
        if self.max_score == 0:
            return 0
        return (self.total_score / self.max_score) * 100

    def get_score(self, question_number: int) -> Optional[QuestionScore]:
        for score in self.scores:
            if score.question_number == question_number:
                return score
        return None

    def get_answer(self, question_number: int) -> Optional[ExtractedAnswer]:
        for answer in self.extracted_answers:
            if answer.question_number == question_number:
                return answer
        return None


# Adapter response contracts. Values here are untrusted and are
# clamped/normalized before they reach a QuestionScore.

class PageExtraction(BaseModel):
    """Structured text read from one page image."""
    raw_text: str = Field(default="", description="The complete raw text extracted from the image")
    questions: List[ExtractedAnswer] = Field(
        default_factory=list,
        description="Every question found on the page with the student's answer"
    )


class CriterionAssessment(BaseModel):
    """Points the model awarded for one sub-criterion."""
    criterion_text: str = Field(description="The sub-criterion being assessed")
    points: float = Field(description="Points awarded for this sub-criterion")
    max_points: float = Field(description="Maximum points for this sub-criterion")
    feedback: Optional[str] = Field(default=None, description="Short note on this sub-criterion")


class ScoringResponse(BaseModel):
    """The model's evaluation of one answer."""
    points: float = Field(description="Points awarded, between 0 and the question maximum")
    feedback: str = Field(
        default="No feedback provided",
        description="Constructive feedback for the student, 1-3 sentences"
    )
    reasoning: str = Field(default="", description="Step-by-step rationale for the score")
    confidence: Confidence = Field(default=Confidence.MEDIUM, description="high, medium or low")
    flag_for_review: bool = Field(
        default=False,
        description="True if the answer is ambiguous or needs human verification"
    )
    criteria_breakdown: Optional[List[CriterionAssessment]] = Field(
        default=None,
        description="Optional per-criterion allocation of the points"
    )


class ScoreUpdate(BaseModel):
    """A reviewer's edit to one question score."""
    question_number: int
    points: Optional[float] = None
    feedback: Optional[str] = None
    flag_for_review: Optional[bool] = None
    criteria_breakdown: Optional[List[CriterionAssessment]] = None
