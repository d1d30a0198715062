import threading

import pytest

import api.session as session
from timed_quiz.errors import (
    AssessmentNotFoundError,
    InvalidAnswerError,
    SessionClosedError,
    SessionStateError,
    StoreError,
    SubmissionFailedError,
)
from timed_quiz.models.session_state import Redirect, SessionState, SessionView
from timed_quiz.services.session_controller import SessionController, finalize_expired_sessions
from timed_quiz.stores.memory import InMemoryAssessmentStore, InMemoryResultStore, InMemorySessionStore
from timed_quiz.stores.sql import SqlResultStore, SqlSessionStore, make_engine

from conftest import make_definition


def test_new_session_starts_with_full_duration(make_controller, sessions, clock):
    ctrl = make_controller()
    view = ctrl.initialize("u1", "quiz-1")

    assert isinstance(view, SessionView)
    assert view.remaining_seconds == 60
    assert view.answers == {}
    assert ctrl.state is SessionState.ACTIVE
    assert sessions.get("u1", "quiz-1").start_time == clock.now


def test_resume_before_deadline(make_controller, sessions, clock):
    sessions.create_if_absent("u1", "quiz-1", clock.now - 20)
    sessions.merge_answers("u1", "quiz-1", {"q1": "B"}, clock.now - 10)

    ctrl = make_controller()
    view = ctrl.initialize("u1", "quiz-1")

    assert view.remaining_seconds == 40
    assert view.answers == {"q1": "B"}
    assert ctrl.state is SessionState.ACTIVE


def test_resume_does_not_reset_start_time(make_controller, sessions, clock):
    make_controller().initialize("u1", "quiz-1")
    start = sessions.get("u1", "quiz-1").start_time
    clock.advance(30)

    view = make_controller().initialize("u1", "quiz-1")

    assert view.remaining_seconds == 30
    assert sessions.get("u1", "quiz-1").start_time == start


def test_expired_on_resume_grades_immediately(make_controller, sessions, results, clock):
    sessions.create_if_absent("u1", "quiz-1", clock.now - 90)
    sessions.merge_answers("u1", "quiz-1", {"q1": "A"}, clock.now - 80)

    ctrl = make_controller()
    outcome = ctrl.initialize("u1", "quiz-1")

    assert isinstance(outcome, Redirect)
    assert outcome.reason == "expired"
    result = results.get(outcome.result_id)
    assert result.score == 10
    assert result.wrong_question_ids == ["q2"]
    assert result.auto_submitted is True
    assert ctrl.state is SessionState.GRADED
    assert sessions.get("u1", "quiz-1") is None


def test_deadline_boundary_is_expired(make_controller, sessions, clock):
    sessions.create_if_absent("u1", "quiz-1", clock.now - 60)
    assert isinstance(make_controller().initialize("u1", "quiz-1"), Redirect)


def test_replay_redirects_to_existing_result(make_controller, sessions, results, clock):
    sessions.create_if_absent("u1", "quiz-1", clock.now - 90)
    first = make_controller().initialize("u1", "quiz-1")

    ctrl = make_controller()
    again = ctrl.initialize("u1", "quiz-1")

    assert isinstance(again, Redirect)
    assert again.reason == "already_completed"
    assert again.result_id == first.result_id
    assert sessions.get("u1", "quiz-1") is None
    assert len(results.list_for_user("u1")) == 1
    assert ctrl.state is SessionState.GRADED


def test_missing_assessment(make_controller, sessions):
    with pytest.raises(AssessmentNotFoundError):
        make_controller().initialize("u1", "nope")
    assert sessions.list_records() == []


def test_inactive_assessment_is_not_found(sessions, results, clock):
    store = InMemoryAssessmentStore([make_definition(is_active=False)])
    ctrl = SessionController(store, sessions, results, clock=clock)
    with pytest.raises(AssessmentNotFoundError):
        ctrl.initialize("u1", "quiz-1")


def test_initialize_twice_is_rejected(make_controller):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    with pytest.raises(SessionStateError):
        ctrl.initialize("u1", "quiz-1")


def test_record_answer_writes_through(make_controller, sessions, clock):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    clock.advance(5)

    answers = ctrl.record_answer("q1", "A")

    assert answers == {"q1": "A"}
    record = sessions.get("u1", "quiz-1")
    assert record.answers == {"q1": "A"}
    assert record.last_sync_time == clock.now


def test_record_answer_rejects_invalid(make_controller):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    with pytest.raises(InvalidAnswerError):
        ctrl.record_answer("q9", "A")
    with pytest.raises(InvalidAnswerError):
        ctrl.record_answer("q1", "Z")
    assert ctrl.answers == {}


def test_record_answer_after_deadline_auto_submits(make_controller, results, clock):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    ctrl.record_answer("q1", "A")
    clock.advance(61)

    with pytest.raises(SessionClosedError) as exc:
        ctrl.record_answer("q2", "C")

    assert ctrl.state is SessionState.GRADED
    assert exc.value.result_id == ctrl.result_id
    assert results.get(ctrl.result_id).score == 10


def test_tick_counts_down_then_auto_submits(make_controller, results, clock):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    ctrl.record_answer("q2", "C")

    clock.advance(45)
    assert ctrl.tick() == 15
    assert ctrl.state is SessionState.ACTIVE

    clock.advance(15)
    assert ctrl.tick() == 0
    assert ctrl.state is SessionState.GRADED
    result = results.get(ctrl.result_id)
    assert result.score == 5
    assert result.auto_submitted is True

    # 채점 이후의 tick은 아무 일도 하지 않는다
    clock.advance(10)
    assert ctrl.tick() == 0
    assert len(results.list_for_user("u1")) == 1


def test_manual_submit_then_tick_is_noop(make_controller, results, clock):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    ctrl.record_answer("q1", "A")

    rid = ctrl.submit()
    clock.advance(120)
    ctrl.tick()

    assert ctrl.submit(is_automatic=True) == rid
    assert len(results.list_for_user("u1")) == 1
    assert results.get(rid).auto_submitted is False


def test_submit_incomplete_is_allowed(make_controller, results):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    assert not ctrl.is_complete

    rid = ctrl.submit()

    assert results.get(rid).score == 0
    assert results.get(rid).wrong_question_ids == ["q1", "q2"]


def test_answers_closed_after_submit(make_controller):
    ctrl = make_controller()
    ctrl.initialize("u1", "quiz-1")
    ctrl.submit()
    with pytest.raises(SessionClosedError):
        ctrl.record_answer("q1", "A")


def test_submit_before_initialize(make_controller):
    with pytest.raises(SessionStateError):
        make_controller().submit()


def test_two_tabs_converge(make_controller, results, clock):
    tab_a = make_controller()
    tab_b = make_controller()
    tab_a.initialize("u1", "quiz-1")
    clock.advance(5)
    tab_b.initialize("u1", "quiz-1")

    tab_a.record_answer("q1", "A")
    tab_b.record_answer("q2", "C")

    rid = tab_a.submit()
    assert results.get(rid).score == 15

    # 다른 탭은 다음 동기화 시점에 제출 사실을 알게 된다
    with pytest.raises(SessionClosedError) as exc:
        tab_b.record_answer("q2", "B")
    assert exc.value.result_id == rid
    assert tab_b.submit() == rid
    assert len(results.list_for_user("u1")) == 1


class _FlakySessionStore(InMemorySessionStore):
    def __init__(self):
        super().__init__()
        self.fail_merges = False

    def merge_answers(self, *args, **kwargs):
        if self.fail_merges:
            raise StoreError("network down")
        return super().merge_answers(*args, **kwargs)


def test_sync_failure_is_retried_on_next_tick(assessments, results, clock):
    store = _FlakySessionStore()
    ctrl = SessionController(assessments, store, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")

    store.fail_merges = True
    ctrl.record_answer("q1", "A")
    assert ctrl.answers == {"q1": "A"}
    assert ctrl.has_unsynced_answers
    assert store.get("u1", "quiz-1").answers == {}

    store.fail_merges = False
    clock.advance(1)
    ctrl.tick()
    assert not ctrl.has_unsynced_answers
    assert store.get("u1", "quiz-1").answers == {"q1": "A"}


def test_unsynced_answers_are_graded(assessments, results, clock):
    store = _FlakySessionStore()
    ctrl = SessionController(assessments, store, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")
    store.fail_merges = True
    ctrl.record_answer("q1", "A")

    rid = ctrl.submit()
    assert results.get(rid).score == 10


class _DownResultStore(InMemoryResultStore):
    def __init__(self):
        super().__init__()
        self.down = True

    def add_if_absent(self, record):
        if self.down:
            raise StoreError("down")
        return super().add_if_absent(record)


def test_submission_failure_keeps_session_for_retry(assessments, sessions, clock):
    results = _DownResultStore()
    ctrl = SessionController(assessments, sessions, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")
    ctrl.record_answer("q1", "A")

    with pytest.raises(SubmissionFailedError):
        ctrl.submit()
    assert ctrl.state is SessionState.ACTIVE
    assert sessions.get("u1", "quiz-1").answers == {"q1": "A"}

    results.down = False
    rid = ctrl.submit()
    assert results.get(rid).score == 10
    assert sessions.get("u1", "quiz-1") is None


def test_auto_submit_failure_retried_by_next_tick(assessments, sessions, clock):
    results = _DownResultStore()
    ctrl = SessionController(assessments, sessions, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")
    clock.advance(60)

    with pytest.raises(SubmissionFailedError):
        ctrl.tick()
    assert ctrl.state is SessionState.EXPIRED

    results.down = False
    assert ctrl.tick() == 0
    assert ctrl.state is SessionState.GRADED


def test_finalize_expired_sessions(assessments, sessions, results, clock):
    sessions.create_if_absent("late", "quiz-1", clock.now - 300)
    sessions.merge_answers("late", "quiz-1", {"q1": "A"}, clock.now - 290)
    sessions.create_if_absent("fresh", "quiz-1", clock.now - 10)
    sessions.create_if_absent("orphan", "deleted-quiz", clock.now - 300)

    done = finalize_expired_sessions(assessments, sessions, results, clock.now)

    assert len(done) == 1
    assert results.get(done[0]).user_id == "late"
    assert results.get(done[0]).score == 10
    assert sessions.get("late", "quiz-1") is None
    assert sessions.get("fresh", "quiz-1") is not None
    assert sessions.get("orphan", "deleted-quiz") is not None


@pytest.fixture(params=["memory", "sql"])
def shared_stores(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore(), InMemoryResultStore()
    engine = make_engine(f"sqlite:///{tmp_path / 'quiz.db'}")
    return SqlSessionStore(engine), SqlResultStore(engine)


def _run_together(calls):
    """calls를 동시에 시작해 반환값 목록을 돌려준다."""
    barrier = threading.Barrier(len(calls))
    out = [None] * len(calls)
    errors = []

    def _run(i, fn):
        barrier.wait()
        try:
            out[i] = fn()
        except Exception as e:  # 스레드 안 예외는 메인에서 다시 확인
            errors.append(e)

    threads = [threading.Thread(target=_run, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    return out


def test_concurrent_tick_and_submit_grade_once(assessments, shared_stores, clock):
    sessions, results = shared_stores
    ctrl = SessionController(assessments, sessions, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")
    ctrl.record_answer("q1", "A")
    clock.advance(60)

    out = _run_together([ctrl.tick, ctrl.submit, ctrl.tick, ctrl.submit])

    assert out[0] == 0 and out[2] == 0
    assert out[1] == out[3] == ctrl.result_id
    stored = results.list_for_user("u1")
    assert len(stored) == 1
    assert stored[0].id == ctrl.result_id
    assert stored[0].score == 10


def test_concurrent_controllers_share_one_result(assessments, shared_stores, clock):
    sessions, results = shared_stores
    tabs = [SessionController(assessments, sessions, results, clock=clock) for _ in range(4)]
    for tab in tabs:
        tab.initialize("u1", "quiz-1")
    tabs[0].record_answer("q2", "C")

    ids = _run_together([tab.submit for tab in tabs])

    assert len(set(ids)) == 1
    assert all(tab.result_id == ids[0] for tab in tabs)
    stored = results.list_for_user("u1")
    assert [r.id for r in stored] == ids[:1]
    assert sessions.get("u1", "quiz-1") is None


def test_registry_keeps_controller_with_unsynced_answers(assessments, results, clock, monkeypatch):
    store = _FlakySessionStore()
    ctrl = SessionController(assessments, store, results, clock=clock)
    ctrl.initialize("u1", "quiz-1")
    session.get_or_create("u1", "quiz-1", lambda: ctrl)

    store.fail_merges = True
    ctrl.record_answer("q1", "A")
    monkeypatch.setattr(session, "SESSION_TTL", -1)

    # TTL이 지나도 답안이 저장소에 없으면 제거하지 않는다
    assert session.cleanup_expired() == 0
    assert session.get_controller("u1", "quiz-1") is ctrl

    store.fail_merges = False
    assert session.cleanup_expired() == 1
    assert store.get("u1", "quiz-1").answers == {"q1": "A"}
    assert session.get_controller("u1", "quiz-1") is None
