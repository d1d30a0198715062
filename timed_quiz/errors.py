"""
errors.py — 세션 코어 예외 계층

호출자(HTTP 라우터 등)는 예외 종류로 재시도/이동 여부를 판단한다.
"""


class QuizSessionError(Exception):
    """세션 코어에서 발생하는 모든 예외의 기반 클래스."""


class AssessmentNotFoundError(QuizSessionError):
    """퀴즈 정의가 없거나 비공개 상태. 재시도하지 않는다."""

    def __init__(self, assessment_id: str):
        super().__init__(f"퀴즈를 찾을 수 없습니다: {assessment_id}")
        self.assessment_id = assessment_id


class InvalidAnswerError(QuizSessionError, ValueError):
    """존재하지 않는 문제이거나 보기에 없는 답안."""


class SessionStateError(QuizSessionError):
    """현재 상태에서 허용되지 않는 호출 (예: initialize 전에 submit)."""


class SessionClosedError(SessionStateError):
    """이미 만료되었거나 채점이 끝난 세션에 답안을 쓰려는 경우."""

    def __init__(self, message: str, result_id: str | None = None):
        super().__init__(message)
        self.result_id = result_id


class StoreError(QuizSessionError):
    """저장소 읽기/쓰기 실패."""


class SubmissionFailedError(QuizSessionError):
    """
    결과 레코드 저장 실패. 세션 레코드는 그대로 남아 있으므로 재시도 가능.
    """
