"""Shared fixtures and fake adapters for exam scoring tests."""

import asyncio
from typing import Dict, List, Optional, Union

import pytest

from paperscore.tools.exam_scoring.models import (
    ExtractedAnswer, PageExtraction, Question, RubricGuidelines, RubricSchema, ScoringResponse
)
from paperscore.tools.exam_scoring.store import RubricStore, SubmissionStore


class FakeExtractor:
    """Extraction adapter returning canned pages keyed by image path."""

    def __init__(self, pages: Dict[str, Union[PageExtraction, Exception]]):
        self.pages = pages
        self.calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def extract(self, images, expected_questions=None):
        self.calls.append(list(images))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            page = self.pages[images[0]]
            if isinstance(page, Exception):
                raise page
            return page
        finally:
            self.in_flight -= 1


class FakeScorer:
    """Scoring adapter returning canned responses keyed by question number."""

    def __init__(self, responses: Dict[int, Union[ScoringResponse, Exception]],
                 on_call=None):
        self.responses = responses
        self.on_call = on_call
        self.started: List[int] = []
        self.finished: List[int] = []
        self.answers: Dict[int, str] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def score(self, question, student_answer, guidelines):
        number = question.question_number
        self.started.append(number)
        self.answers[number] = student_answer
        if self.on_call:
            self.on_call(number)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            response = self.responses[number]
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1
            self.finished.append(number)


@pytest.fixture
def guidelines():
    return RubricGuidelines(
        full_credit="All key points present",
        partial_credit="Some key points present",
        no_credit="Blank or wrong",
    )


@pytest.fixture
def questions():
    return [
        Question(question_number=1, question_text="Define photosynthesis", max_points=5,
                 evaluation_criteria="Mentions light, CO2 and glucose"),
        Question(question_number=2, question_text="Explain the water cycle", max_points=10,
                 evaluation_criteria="Evaporation, condensation, precipitation"),
    ]


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def rubric_store(data_dir):
    return RubricStore(data_dir)


@pytest.fixture
def submission_store(data_dir):
    return SubmissionStore(data_dir)


@pytest.fixture
def rubric(rubric_store, questions, guidelines):
    return rubric_store.create("Biology Quiz", questions, guidelines)


def page(raw_text: str, answers: Optional[Dict[int, str]] = None) -> PageExtraction:
    return PageExtraction(
        raw_text=raw_text,
        questions=[ExtractedAnswer(question_number=n, student_answer=a) for n, a in (answers or {}).items()],
    )


def response(points: float, feedback: str = "Good", **kwargs) -> ScoringResponse:
    return ScoringResponse(points=points, feedback=feedback, **kwargs)
