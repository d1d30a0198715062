"""
stores/base.py — 세션 코어가 의존하는 저장소 인터페이스

구현체:
  - stores/memory.py : 프로세스 내 딕셔너리 + threading.Lock
  - stores/sql.py    : SQLAlchemy 기반 영속 저장소
"""

from typing import Dict, List, Optional, Protocol

from timed_quiz.models.assessment_model import AssessmentDefinition
from timed_quiz.models.result_model import ResultRecord
from timed_quiz.models.session_state import SessionRecord


class AssessmentStore(Protocol):
    """퀴즈 정의 조회 (읽기 전용)."""

    def get(self, assessment_id: str) -> Optional[AssessmentDefinition]: ...

    def list_all(self) -> List[AssessmentDefinition]: ...


class SessionStore(Protocol):
    """
    진행 중 세션 레코드 저장소.

    - start_time은 최초 생성 시에만 설정된다.
    - answers는 키 단위 병합(last-write-wins)만 허용, 문서 전체 덮어쓰기 금지.
    """

    def get(self, user_id: str, assessment_id: str) -> Optional[SessionRecord]: ...

    def create_if_absent(
        self, user_id: str, assessment_id: str, start_time: float
    ) -> SessionRecord: ...

    def merge_answers(
        self,
        user_id: str,
        assessment_id: str,
        partial_answers: Dict[str, str],
        sync_time: float,
    ) -> Optional[SessionRecord]:
        """레코드가 없으면 아무것도 쓰지 않고 None을 반환."""
        ...

    def delete(self, user_id: str, assessment_id: str) -> None: ...

    def list_records(self) -> List[SessionRecord]: ...


class ResultStore(Protocol):
    """채점 결과 저장소 (append-only)."""

    def get(self, result_id: str) -> Optional[ResultRecord]: ...

    def find(self, user_id: str, assessment_id: str) -> Optional[ResultRecord]: ...

    def add_if_absent(self, record: ResultRecord) -> ResultRecord:
        """
        (user_id, assessment_id)에 결과가 없을 때만 저장한다.
        이미 있으면 기존 레코드를 그대로 반환 (원자적).
        """
        ...

    def list_for_user(self, user_id: str) -> List[ResultRecord]: ...
