"""
models/session_state.py

진행 중인 시험 세션 상태 모델 (OMR 카드).
Pydantic BaseModel 기반 — 저장소 직렬화/역직렬화 및 타입 안전성 확보.
UI 코드 없음.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from timed_quiz.models.assessment_model import AssessmentDefinition


class SessionState(str, Enum):
    """세션 컨트롤러 상태. GRADED는 종료 상태."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    EXPIRED = "expired"
    GRADED = "graded"


class SessionRecord(BaseModel):
    """
    (user_id, assessment_id) 당 하나만 존재하는 진행 중 세션 레코드.

    Attributes:
        user_id:        응시자 식별자 (인증 제공자가 준 불투명한 값).
        assessment_id:  퀴즈 식별자.
        start_time:     세션 시작 시각 (Unix timestamp). 생성 시 한 번만 설정.
        answers:        답안지. {question.id: 선택한 보기 문자열}
                        병합만 되고 키가 삭제되지 않는다.
        last_sync_time: 마지막으로 답안이 저장소에 반영된 시각.
    """

    user_id: str = Field(..., min_length=1, description="응시자 식별자")
    assessment_id: str = Field(..., min_length=1, description="퀴즈 식별자")
    start_time: float = Field(..., description="시험 시작 시각 (Unix timestamp)")
    answers: Dict[str, str] = Field(
        default_factory=dict,
        description="사용자 답안지. key: question.id, value: 선택한 보기 문자열"
    )
    last_sync_time: Optional[float] = Field(
        default=None,
        description="마지막 답안 동기화 시각 (Unix timestamp)"
    )

    @property
    def key(self) -> tuple:
        return (self.user_id, self.assessment_id)

    def deadline(self, duration_seconds: float) -> float:
        return self.start_time + duration_seconds


class SessionView(BaseModel):
    """initialize() 성공 시 호출자에게 돌려주는 진행 화면 데이터."""

    assessment: AssessmentDefinition
    remaining_seconds: float = Field(..., ge=0)
    answers: Dict[str, str] = Field(default_factory=dict)


class Redirect(BaseModel):
    """
    결과 화면으로 이동해야 하는 경우.

    reason:
        "already_completed" — 이미 결과가 존재 (재응시 불가)
        "expired"           — 재접속 시점에 이미 제한 시간 초과, 즉시 채점됨
    """

    result_id: str
    reason: str = "already_completed"
