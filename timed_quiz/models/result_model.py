"""
models/result_model.py

채점 결과 레코드. 한 번 저장되면 변경되지 않는다 (append-only).
"""

import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AnsweredQuestion(BaseModel):
    """문제별 채점 내역."""

    model_config = ConfigDict(frozen=True)

    question_id: str
    selected_option: Optional[str] = Field(
        None,
        description="선택한 보기. 미응답이면 None"
    )
    is_correct: bool
    points: int = Field(..., description="문제 배점 (획득 점수가 아님)")


class ResultRecord(BaseModel):
    """
    (user_id, assessment_id) 당 최대 하나 존재하는 최종 결과.

    존재 여부 자체가 '응시 완료' 표식이며, 새 세션 생성 전에 항상 확인된다.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="결과 식별자")
    user_id: str
    user_name: str = ""
    assessment_id: str
    score: int = Field(..., ge=0)
    total_points: int = Field(..., ge=0)
    answers: List[AnsweredQuestion] = Field(default_factory=list)
    wrong_question_ids: List[str] = Field(default_factory=list)
    submitted_at: float = Field(..., description="제출 시각 (Unix timestamp)")
    auto_submitted: bool = Field(False, description="시간 초과로 자동 제출되었는지 여부")

    @property
    def key(self) -> tuple:
        return (self.user_id, self.assessment_id)
