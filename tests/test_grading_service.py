import pytest

from timed_quiz.errors import StoreError, SubmissionFailedError
from timed_quiz.models.assessment_model import Question
from timed_quiz.services.grading_service import (
    build_review,
    calculate_percentage,
    finalize_submission,
    grade,
    is_passed,
    summarize_grade_book,
    summarize_result,
)

from conftest import make_definition


def test_full_correct_run(definition):
    result = grade(definition, {"q1": "A", "q2": "C"}, user_id="u1")
    assert result.score == 15
    assert result.total_points == 15
    assert result.wrong_question_ids == []
    assert [a.is_correct for a in result.answers] == [True, True]


def test_unanswered_is_incorrect(definition):
    result = grade(definition, {"q1": "A"})
    assert result.score == 10
    assert result.wrong_question_ids == ["q2"]
    q2 = result.answers[1]
    assert q2.question_id == "q2"
    assert q2.selected_option is None
    assert q2.is_correct is False


def test_total_points_copied_from_definition(definition):
    result = grade(definition, {})
    assert result.score == 0
    assert result.total_points == definition.total_points
    assert result.wrong_question_ids == ["q1", "q2"]


@pytest.mark.parametrize("answers", [
    {},
    {"q1": "B"},
    {"q1": "A", "q2": "A"},
    {"q1": "A", "q2": "C"},
    {"q1": "zzz", "q2": "C", "extra": "A"},
])
def test_score_within_bounds(definition, answers):
    result = grade(definition, answers)
    assert 0 <= result.score <= definition.total_points


def test_answers_keep_definition_order(definition):
    result = grade(definition, {"q2": "C", "q1": "B"})
    assert [a.question_id for a in result.answers] == ["q1", "q2"]


def test_finalize_is_idempotent(definition, sessions, results):
    sessions.create_if_absent("u1", definition.id, 100.0)

    first = finalize_submission(results, sessions, "u1", definition.id, definition, {"q1": "A"}, 150.0)
    second = finalize_submission(results, sessions, "u1", definition.id, definition, {"q1": "B", "q2": "C"}, 160.0)

    assert first == second
    assert len(results.list_for_user("u1")) == 1
    stored = results.get(first)
    assert stored.score == 10
    assert stored.submitted_at == 150.0
    assert sessions.get("u1", definition.id) is None


class _FailingResultStore:
    def find(self, user_id, assessment_id):
        return None

    def add_if_absent(self, record):
        raise StoreError("down")


def test_result_write_failure_keeps_session(definition, sessions):
    sessions.create_if_absent("u1", definition.id, 100.0)
    sessions.merge_answers("u1", definition.id, {"q1": "A"}, 101.0)

    with pytest.raises(SubmissionFailedError):
        finalize_submission(_FailingResultStore(), sessions, "u1", definition.id, definition, {"q1": "A"}, 150.0)

    assert sessions.get("u1", definition.id).answers == {"q1": "A"}


class _FailingDeleteSessionStore:
    def delete(self, user_id, assessment_id):
        raise StoreError("down")


def test_session_delete_failure_is_not_fatal(definition, results):
    rid = finalize_submission(
        results, _FailingDeleteSessionStore(), "u1", definition.id, definition, {"q1": "A"}, 150.0
    )
    assert results.get(rid).score == 10


def test_summary_and_review(definition):
    result = grade(definition, {"q1": "B"}, user_id="u1", submitted_at=10.0)
    summary = summarize_result(result)
    assert summary["percentage"] == 0
    assert summary["passed"] is False
    assert summary["correct_count"] == 0
    assert summary["incorrect_count"] == 1
    assert summary["unanswered_count"] == 1

    review = build_review(result, definition)
    assert review[0]["correct_option"] == "A"
    assert review[0]["selected_option"] == "B"
    assert "explanation" in review[1]

    bare = build_review(result, None)
    assert "correct_option" not in bare[0]


def test_percentage_and_pass(definition):
    result = grade(definition, {"q1": "A"})
    assert calculate_percentage(result) == 67
    assert is_passed(67)
    assert not is_passed(49.9)


def test_grade_book_average_is_points_weighted(definition):
    big = grade(definition, {"q1": "A"}, user_id="u1")       # 10/15
    short = make_definition(
        id="quiz-2",
        total_points=5,
        questions=[Question(id="s1", text="단답", options=["A", "B"], correct_option="B", points=5)],
    )
    small = grade(short, {}, user_id="u1")                     # 0/5

    book = summarize_grade_book([big, small])
    # 단순 평균이면 (67 + 0) / 2 = 33
    assert book == {"count": 2, "earned_points": 10, "total_points": 20, "average_percentage": 50}
    assert summarize_grade_book([]) == {
        "count": 0,
        "earned_points": 0,
        "total_points": 0,
        "average_percentage": 0,
    }
