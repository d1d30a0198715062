from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Question(BaseModel):
    """
    시간제한 퀴즈의 객관식 문제 모델
    Pydantic v2 적용
    """
    id: str = Field(
        ...,
        min_length=1,
        description="문제 식별자 (퀴즈 내에서 고유)"
    )
    text: str = Field(
        ...,
        min_length=1,
        description="발문/문제 내용"
    )
    options: List[str] = Field(
        ...,
        description="보기 리스트 (순서 유지)"
    )
    correct_option: str = Field(
        ...,
        description="정답 보기 문자열 (반드시 options 중 하나)"
    )
    points: int = Field(
        ...,
        ge=0,
        description="배점"
    )
    explanation: str = Field(
        "",
        description="해설 (오답 복습 화면용)"
    )

    @field_validator('options')
    @classmethod
    def validate_options_length(cls, v: List[str]) -> List[str]:
        """
        검증 로직 1: 보기는 최소 2개 이상이어야 한다.
        """
        if len(v) < 2:
            raise ValueError("보기(options)는 최소 2개 이상의 항목이 필요합니다.")
        return v

    @model_validator(mode='after')
    def validate_correct_in_options(self) -> 'Question':
        """
        검증 로직 2: 정답은 반드시 보기 리스트 안에 있어야 한다.
        """
        if self.correct_option not in self.options:
            raise ValueError(
                f"정답('{self.correct_option}')이 보기 리스트({self.options})에 존재하지 않습니다."
            )
        return self


class AssessmentDefinition(BaseModel):
    """
    퀴즈 정의 (콘텐츠 관리 쪽 소유, 세션 코어에서는 읽기 전용).

    세션 시작 시 한 번 조회한 뒤 세션이 끝날 때까지 고정된 값으로 취급한다.
    """
    id: str = Field(..., min_length=1, description="퀴즈 식별자")
    title: str = Field("", description="퀴즈 제목")
    description: str = Field("", description="퀴즈 설명")
    duration: int = Field(..., gt=0, description="제한 시간 (분)")
    total_points: int = Field(..., ge=0, description="총점")
    is_active: bool = Field(True, description="수강생에게 공개 여부")
    questions: List[Question] = Field(..., min_length=1, description="문제 리스트 (출제 순서)")

    @model_validator(mode='after')
    def validate_questions(self) -> 'AssessmentDefinition':
        """
        문제 id 중복 금지, 배점 합계 == total_points.
        """
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError(f"문제 id가 중복되었습니다: {ids}")
        point_sum = sum(q.points for q in self.questions)
        if point_sum != self.total_points:
            raise ValueError(
                f"배점 합계({point_sum})가 총점({self.total_points})과 다릅니다."
            )
        return self

    @property
    def duration_seconds(self) -> int:
        return self.duration * 60

    def get_question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None
