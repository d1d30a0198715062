"""
services/session_controller.py

시간제한 퀴즈 한 번의 응시(사용자 × 퀴즈)를 관리하는 상태 머신.

상태 전이:
  UNINITIALIZED → ACTIVE   : initialize (신규 또는 시간이 남은 재접속)
  UNINITIALIZED → GRADED   : initialize (이미 결과 존재, 또는 재접속 시 이미 시간 초과)
  ACTIVE        → ACTIVE   : record_answer, tick (시간 남음)
  ACTIVE        → EXPIRED  : tick (남은 시간 0)
  ACTIVE        → GRADED   : submit (수동 제출)
  EXPIRED       → GRADED   : 자동 제출
GRADED는 종료 상태.

시계는 주입받는다 (기본 time.time). 모든 연산은 now를 인자로 받을 수 있어
시뮬레이션 시계로 테스트할 수 있다. 여러 탭/기기의 동시 접근은 저장소의
키 단위 병합과 멱등 제출로 수렴한다. 락은 이 컨트롤러 인스턴스 내부에서만 쓴다.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Union

from config import DEFAULT_USER_NAME
from timed_quiz.errors import (
    AssessmentNotFoundError,
    InvalidAnswerError,
    SessionClosedError,
    SessionStateError,
    StoreError,
    SubmissionFailedError,
)
from timed_quiz.models.assessment_model import AssessmentDefinition
from timed_quiz.models.session_state import Redirect, SessionState, SessionView
from timed_quiz.services.grading_service import finalize_submission
from timed_quiz.stores.base import AssessmentStore, ResultStore, SessionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SessionController:
    """한 사용자의 한 퀴즈 응시를 담당한다."""

    def __init__(
        self,
        assessments: AssessmentStore,
        sessions: SessionStore,
        results: ResultStore,
        clock: Clock = time.time,
        user_name: str = DEFAULT_USER_NAME,
    ) -> None:
        self._assessments = assessments
        self._sessions = sessions
        self._results = results
        self._clock = clock
        self._lock = threading.RLock()

        self.user_name = user_name
        self.state = SessionState.UNINITIALIZED
        self.user_id: Optional[str] = None
        self.assessment_id: Optional[str] = None
        self.definition: Optional[AssessmentDefinition] = None
        self.start_time: Optional[float] = None
        self.answers: Dict[str, str] = {}
        self.result_id: Optional[str] = None
        # 저장소에 아직 반영되지 않은 답안
        self._pending: Dict[str, str] = {}

    # ── 조회 ──────────────────────────────────────────────────────────────────

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        """남은 시간 (초). 종료/미초기화 상태이면 0."""
        if self.definition is None or self.start_time is None:
            return 0.0
        if self.state is SessionState.GRADED:
            return 0.0
        return max(0.0, self._remaining(self._now(now)))

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    @property
    def is_complete(self) -> bool:
        """모든 문제에 답했는지. 제출 전 경고 여부는 호출자가 판단한다."""
        if self.definition is None:
            return False
        return all(q.id in self.answers for q in self.definition.questions)

    @property
    def has_unsynced_answers(self) -> bool:
        return bool(self._pending)

    # ── 상태 전이 ─────────────────────────────────────────────────────────────

    def initialize(
        self, user_id: str, assessment_id: str, now: Optional[float] = None
    ) -> Union[SessionView, Redirect]:
        """
        세션을 새로 만들거나 이어서 시작한다.

        Returns:
            SessionView — 응시 진행 (ACTIVE)
            Redirect    — 결과 화면으로 이동 (GRADED)

        Raises:
            AssessmentNotFoundError: 퀴즈 정의가 없거나 비공개.
            SessionStateError:       이미 초기화된 컨트롤러.
            SubmissionFailedError:   만료 세션 자동 채점 중 결과 저장 실패
                                     (상태는 EXPIRED로 남고 submit()으로 재시도 가능).
        """
        with self._lock:
            if self.state is not SessionState.UNINITIALIZED:
                raise SessionStateError(f"이미 초기화된 세션입니다 (상태: {self.state.value}).")
            now = self._now(now)
            self.user_id = user_id
            self.assessment_id = assessment_id

            # 1) 재응시 방지: 결과가 있으면 바로 결과 화면으로
            existing = self._results.find(user_id, assessment_id)
            if existing is not None:
                self.state = SessionState.GRADED
                self.result_id = existing.id
                logger.info(f"이미 응시 완료: {user_id}/{assessment_id} → {existing.id}")
                return Redirect(result_id=existing.id, reason="already_completed")

            # 2) 퀴즈 정의 조회 (세션 동안 고정)
            definition = self._assessments.get(assessment_id)
            if definition is None or not definition.is_active:
                raise AssessmentNotFoundError(assessment_id)
            self.definition = definition

            # 3) 세션 레코드 조회/생성
            record = self._sessions.get(user_id, assessment_id)
            if record is None:
                record = self._sessions.create_if_absent(user_id, assessment_id, now)
                logger.info(f"새 세션 생성: {user_id}/{assessment_id} (시작 {record.start_time})")
            else:
                logger.info(f"세션 재개: {user_id}/{assessment_id} (답안 {len(record.answers)}개)")

            # 동시 생성 시에도 저장소에 실제로 기록된 start_time을 따른다
            self.start_time = record.start_time
            self.answers = dict(record.answers)

            remaining = self._remaining(now)
            if remaining <= 0:
                self.state = SessionState.EXPIRED
                logger.info(f"재접속 시점에 시간 초과: {user_id}/{assessment_id}, 자동 채점")
                result_id = self._finalize(now, auto_submitted=True)
                return Redirect(result_id=result_id, reason="expired")

            self.state = SessionState.ACTIVE
            return SessionView(
                assessment=definition,
                remaining_seconds=remaining,
                answers=dict(self.answers),
            )

    def record_answer(
        self, question_id: str, selected_option: str, now: Optional[float] = None
    ) -> Dict[str, str]:
        """
        답안 하나를 반영하고 저장소에 즉시 병합(write-through)한다.

        저장 실패는 로그만 남기고 다음 동기화 시점(다음 답안 또는 tick)에 재시도한다.

        Returns:
            현재 로컬 답안지 복사본.

        Raises:
            SessionClosedError:  시간 초과 또는 이미 제출됨.
            InvalidAnswerError:  없는 문제이거나 보기에 없는 답.
        """
        with self._lock:
            self._require_active()
            now = self._now(now)

            if self._remaining(now) <= 0:
                try:
                    self._expire(now)
                except SubmissionFailedError as e:
                    raise SessionClosedError("시험 시간이 종료되었습니다.") from e
                raise SessionClosedError("시험 시간이 종료되었습니다.", self.result_id)

            question = self.definition.get_question(question_id)
            if question is None:
                raise InvalidAnswerError(f"존재하지 않는 문제입니다: {question_id}")
            if selected_option not in question.options:
                raise InvalidAnswerError(
                    f"보기에 없는 답안입니다: {question_id} → '{selected_option}'"
                )

            self.answers[question_id] = selected_option
            self._pending[question_id] = selected_option
            self._sync(now)

            if self.state is SessionState.GRADED:
                raise SessionClosedError("다른 곳에서 이미 제출된 시험입니다.", self.result_id)
            return dict(self.answers)

    def tick(self, now: Optional[float] = None) -> float:
        """
        주기적으로 호출되는 타이머 전이. 남은 시간(초)을 반환한다.

        남은 시간이 0이 되면 EXPIRED로 바꾸고 자동 제출한다.
        채점 이후의 호출은 아무 일도 하지 않는다.

        Raises:
            SubmissionFailedError: 자동 제출 실패. 다음 tick에서 다시 시도한다.
        """
        with self._lock:
            if self.state is SessionState.GRADED:
                return 0.0
            if self.state is SessionState.UNINITIALIZED:
                raise SessionStateError("초기화되지 않은 세션입니다.")
            now = self._now(now)

            if self.state is SessionState.ACTIVE:
                self._sync(now)
                if self.state is SessionState.GRADED:
                    return 0.0
                remaining = self._remaining(now)
                if remaining > 0:
                    return remaining

            self._expire(now)
            return 0.0

    def submit(self, now: Optional[float] = None, is_automatic: bool = False) -> str:
        """
        최종 제출. 결과 id를 반환한다.

        이미 채점되었으면 기존 결과 id를 그대로 반환 (멱등).
        모든 문제에 답했는지는 확인하지 않는다. 미응답은 0점 처리.

        Raises:
            SessionStateError:     초기화 전.
            SubmissionFailedError: 결과 저장 실패. 상태는 바뀌지 않으므로 재시도 가능.
        """
        with self._lock:
            if self.state is SessionState.GRADED:
                return self.result_id
            if self.state is SessionState.UNINITIALIZED:
                raise SessionStateError("초기화되지 않은 세션입니다.")
            return self._finalize(self._now(now), auto_submitted=is_automatic)

    # ── 내부 ──────────────────────────────────────────────────────────────────

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def _remaining(self, now: float) -> float:
        # 기기 간 시계 오차로 now < start_time 이어도 제한 시간을 넘지 않도록
        elapsed = max(0.0, now - self.start_time)
        return self.definition.duration_seconds - elapsed

    def _require_active(self) -> None:
        if self.state is SessionState.ACTIVE:
            return
        if self.state is SessionState.UNINITIALIZED:
            raise SessionStateError("초기화되지 않은 세션입니다.")
        if self.state is SessionState.GRADED:
            raise SessionClosedError("이미 제출된 시험입니다.", self.result_id)
        raise SessionClosedError("시험 시간이 종료되었습니다.")

    def _expire(self, now: float) -> None:
        if self.state is SessionState.ACTIVE:
            self.state = SessionState.EXPIRED
            logger.info(f"시간 초과: {self.user_id}/{self.assessment_id}, 자동 제출")
        self._finalize(now, auto_submitted=True)

    def _finalize(self, now: float, auto_submitted: bool) -> str:
        answers = self._answers_for_grading(now)
        result_id = finalize_submission(
            self._results,
            self._sessions,
            self.user_id,
            self.assessment_id,
            self.definition,
            answers,
            now,
            user_name=self.user_name,
            auto_submitted=auto_submitted,
        )
        self.state = SessionState.GRADED
        self.result_id = result_id
        self._pending.clear()
        return result_id

    def _answers_for_grading(self, now: float) -> Dict[str, str]:
        """
        저장소의 답안(다른 탭 포함) 위에 아직 동기화되지 않은 로컬 답안을 덮는다.
        저장소를 읽을 수 없으면 로컬 답안을 그대로 쓴다.
        """
        self._sync(now)
        if self.state is SessionState.GRADED:
            return dict(self.answers)
        try:
            record = self._sessions.get(self.user_id, self.assessment_id)
        except StoreError as e:
            logger.warning(f"채점용 세션 조회 실패, 로컬 답안 사용: {e}")
            return dict(self.answers)
        if record is None:
            return dict(self.answers)
        merged = dict(record.answers)
        merged.update(self._pending)
        return merged

    def _sync(self, now: float) -> None:
        """대기 중인 답안을 저장소에 병합. 실패해도 예외를 올리지 않는다."""
        if not self._pending or self.state is SessionState.GRADED:
            return
        batch = dict(self._pending)
        try:
            record = self._sessions.merge_answers(
                self.user_id, self.assessment_id, batch, now
            )
        except StoreError as e:
            logger.warning(
                f"답안 동기화 실패, 다음 기회에 재시도 ({len(batch)}개): "
                f"{self.user_id}/{self.assessment_id} — {e}"
            )
            return

        if record is None:
            self._handle_missing_record(now)
            return
        self._pending.clear()

    def _handle_missing_record(self, now: float) -> None:
        """
        세션 레코드가 사라진 경우.
        다른 탭이 제출했으면 그 결과를 따르고, 아니면 원래 start_time으로 복구한다.
        """
        try:
            existing = self._results.find(self.user_id, self.assessment_id)
        except StoreError as e:
            logger.warning(f"결과 조회 실패, 다음 기회에 재시도: {e}")
            return
        if existing is not None:
            logger.info(
                f"다른 곳에서 제출 완료됨: {self.user_id}/{self.assessment_id} → {existing.id}"
            )
            self.state = SessionState.GRADED
            self.result_id = existing.id
            self._pending.clear()
            return

        logger.warning(f"세션 레코드 유실, 복구: {self.user_id}/{self.assessment_id}")
        try:
            self._sessions.create_if_absent(self.user_id, self.assessment_id, self.start_time)
            record = self._sessions.merge_answers(
                self.user_id, self.assessment_id, dict(self.answers), now
            )
        except StoreError as e:
            logger.warning(f"세션 복구 실패, 다음 기회에 재시도: {e}")
            self._pending.update(self.answers)
            return
        if record is not None:
            self._pending.clear()


def finalize_expired_sessions(
    assessments: AssessmentStore,
    sessions: SessionStore,
    results: ResultStore,
    now: float,
) -> List[str]:
    """
    제한 시간이 지난 세션을 모두 채점한다 (클라이언트가 돌아오지 않은 응시 포함).

    마지막으로 동기화된 답안으로 채점되며, 실패한 세션은 남겨 두고 다음 주기에 재시도.

    Returns:
        이번에 처리된 결과 id 리스트.
    """
    finalized: List[str] = []
    for record in sessions.list_records():
        definition = assessments.get(record.assessment_id)
        if definition is None:
            logger.warning(f"퀴즈 정의 없음, 세션 유지: {record.user_id}/{record.assessment_id}")
            continue
        if now < record.deadline(definition.duration_seconds):
            continue
        try:
            result_id = finalize_submission(
                results,
                sessions,
                record.user_id,
                record.assessment_id,
                definition,
                record.answers,
                now,
                auto_submitted=True,
            )
        except SubmissionFailedError:
            continue
        finalized.append(result_id)
    if finalized:
        logger.info(f"만료 세션 {len(finalized)}개 자동 채점")
    return finalized
