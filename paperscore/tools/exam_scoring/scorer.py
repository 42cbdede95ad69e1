"""Score one answer against a rubric question using pydantic-ai."""

import logging
from typing import Any, Dict, Optional, Protocol

from paperscore.libs.config_loader import ConfigType, get_config
from paperscore.libs.llm import create_agent
from .errors import AdapterError
from .models import Question, RubricGuidelines, ScoringResponse

LOG = logging.getLogger(__name__)

SCORING_SYSTEM_PROMPT = (
    "You are an experienced test evaluator. Score each answer strictly against "
    "the question's evaluation criteria and the rubric guidelines. Be fair but "
    "rigorous, award partial credit for partially correct answers, and focus on "
    "understanding and key concepts over exact wording."
)


class ScoringService(Protocol):
    """Anything that can score one answer."""

    async def score(self, question: Question, student_answer: str,
                    guidelines: RubricGuidelines) -> ScoringResponse:
        ...


def create_scoring_agent(configs: ConfigType,
                         model: Optional[str] = None,
                         settings_dict: Optional[Dict[str, Any]] = None) -> Any:
    """
    Create a pydantic-ai Agent that returns a ScoringResponse.

    Args:
        configs: Configuration dictionary (required)
        model: Model to use (overrides ``scoring.model``)
        settings_dict: Pydantic AI settings dict (overrides config values)

    Returns:
        Configured Agent for scoring
    """
    model = model or get_config("scoring.model", configs, default=None)
    settings_dict = settings_dict or get_config("scoring.pydantic_ai_settings", configs, default=None)
    return create_agent(
        configs=configs,
        model=model,
        settings_dict=settings_dict,
        system_prompt=SCORING_SYSTEM_PROMPT,
        output_type=ScoringResponse,
    )


class AnswerScorer:
    """Score answers with a reasoning model and structured output."""

    def __init__(self, configs: ConfigType,
                 model: Optional[str] = None, settings: Optional[Dict[str, Any]] = None):
        self.configs = configs
        self.model_name = model
        self.agent = create_scoring_agent(configs, model=model, settings_dict=settings)

    async def score(self, question: Question, student_answer: str,
                    guidelines: RubricGuidelines) -> ScoringResponse:
        """
        Score one answer.

        The returned points are the model's claim and are not range-checked here.

        Raises:
            AdapterError: If the call fails or the output does not match ScoringResponse
        """
        prompt = self._build_prompt(question, student_answer, guidelines)
        try:
            result = await self.agent.run(prompt)
        except Exception as e:
            raise AdapterError(f"Scoring failed for question {question.question_number}: {e}", e) from e

        output = result.output
        if not isinstance(output, ScoringResponse):
            raise AdapterError(f"Scoring returned unexpected output type {type(output).__name__}")
        return output

    def _build_prompt(self, question: Question, student_answer: str,
                      guidelines: RubricGuidelines) -> str:
        """Build the scoring prompt for one question."""
        sample = f"\n- Sample/Expected Answer: {question.sample_answer}" if question.sample_answer else ""

        return f"""Score this test answer.

QUESTION INFORMATION:
- Question Number: {question.question_number}
- Question Text: {question.question_text}
- Maximum Points: {question.max_points}
- Evaluation Criteria: {question.evaluation_criteria}{sample}

RUBRIC GUIDELINES:
- Full Credit: {guidelines.full_credit}
- Partial Credit: {guidelines.partial_credit}
- No Credit: {guidelines.no_credit}

STUDENT'S ANSWER:
{student_answer or '(No answer provided)'}

INSTRUCTIONS:
Think step-by-step:
1. What does the question require?
2. What key points should be in a good answer?
3. What did the student provide?
4. What's correct, partially correct, or missing?
5. How many points should be awarded (0 to {question.max_points})?

- Summarize that rationale in reasoning
- Feedback is for the student, 1-3 sentences
- If the answer is blank or irrelevant, award 0 points
- If the evaluation criteria list separate parts, you may return a criteria_breakdown
  whose points add up to the total points
- Set confidence to "low" and flag_for_review to true if you're uncertain"""
