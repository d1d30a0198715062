import pytest

import api.session as session
from timed_quiz.models.assessment_model import AssessmentDefinition, Question
from timed_quiz.services.session_controller import SessionController
from timed_quiz.stores.memory import (
    InMemoryAssessmentStore,
    InMemoryResultStore,
    InMemorySessionStore,
)


class FakeClock:
    """수동으로 시간을 움직이는 시계."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_definition(duration: int = 1, **overrides) -> AssessmentDefinition:
    data = dict(
        id="quiz-1",
        title="샘플 퀴즈",
        duration=duration,
        total_points=15,
        questions=[
            Question(id="q1", text="첫 문제", options=["A", "B", "C"], correct_option="A", points=10),
            Question(id="q2", text="둘째 문제", options=["A", "B", "C"], correct_option="C", points=5),
        ],
    )
    data.update(overrides)
    return AssessmentDefinition(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def definition():
    return make_definition()


@pytest.fixture
def assessments(definition):
    return InMemoryAssessmentStore([definition])


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def results():
    return InMemoryResultStore()


@pytest.fixture
def make_controller(assessments, sessions, results, clock):
    def _make(**kwargs):
        return SessionController(assessments, sessions, results, clock=clock, **kwargs)
    return _make


@pytest.fixture(autouse=True)
def _reset_registry():
    session.reset()
    yield
    session.reset()
