"""
services/grading_service.py

퀴즈 채점, 최종 제출, 결과 분석 로직.
grade()와 분석 함수들은 순수 함수 — I/O, 전역 상태 변경 없음.
finalize_submission()만 저장소에 쓴다.
"""

import logging
from typing import Dict, List, Optional

from config import DEFAULT_USER_NAME, EXCELLENT_PERCENTAGE, PASS_PERCENTAGE
from timed_quiz.errors import StoreError, SubmissionFailedError
from timed_quiz.models.assessment_model import AssessmentDefinition
from timed_quiz.models.result_model import AnsweredQuestion, ResultRecord
from timed_quiz.stores.base import ResultStore, SessionStore

logger = logging.getLogger(__name__)


def grade(
    definition: AssessmentDefinition,
    answers: Dict[str, str],
    user_id: str = "",
    user_name: str = "",
    submitted_at: float = 0.0,
    auto_submitted: bool = False,
) -> ResultRecord:
    """
    답안지를 채점하여 ResultRecord를 만든다.

    정답 판정 기준: answers.get(question.id) == question.correct_option
    응답하지 않은 문제(키 없음)는 None으로 기록되며 항상 오답, 0점.

    Args:
        definition: 채점 기준이 되는 퀴즈 정의.
        answers:    사용자 답안지. {question.id: 선택한 보기 문자열}
        user_id, user_name, submitted_at, auto_submitted:
                    결과 레코드에 그대로 기록되는 메타데이터.

    Returns:
        score는 0 ~ definition.total_points 범위.
        total_points는 정의에서 복사 (미응답이 있어도 줄어들지 않는다).
    """
    score = 0
    graded: List[AnsweredQuestion] = []

    for q in definition.questions:
        selected: Optional[str] = answers.get(q.id)
        is_correct = selected is not None and selected == q.correct_option
        if is_correct:
            score += q.points
        graded.append(
            AnsweredQuestion(
                question_id=q.id,
                selected_option=selected,
                is_correct=is_correct,
                points=q.points,
            )
        )

    return ResultRecord(
        user_id=user_id,
        user_name=user_name,
        assessment_id=definition.id,
        score=score,
        total_points=definition.total_points,
        answers=graded,
        wrong_question_ids=[a.question_id for a in graded if not a.is_correct],
        submitted_at=submitted_at,
        auto_submitted=auto_submitted,
    )


def finalize_submission(
    results: ResultStore,
    sessions: SessionStore,
    user_id: str,
    assessment_id: str,
    definition: AssessmentDefinition,
    answers: Dict[str, str],
    now: float,
    user_name: str = DEFAULT_USER_NAME,
    auto_submitted: bool = False,
) -> str:
    """
    최종 제출: 채점 → 결과 저장 → 세션 삭제. 결과 id를 반환한다.

    - 이미 결과가 있으면 다시 채점하거나 쓰지 않고 기존 id를 반환 (멱등).
    - 결과 저장 실패 시 SubmissionFailedError. 세션 레코드는 남겨 두어 재시도 가능.
    - 세션 삭제 실패는 로그만 남긴다 (결과 존재 확인이 재응시를 막는다).
    """
    try:
        existing = results.find(user_id, assessment_id)
    except StoreError as e:
        logger.error(f"제출 전 결과 조회 실패: {user_id}/{assessment_id} — {e}")
        raise SubmissionFailedError(str(e)) from e
    if existing is not None:
        logger.info(f"이미 제출된 퀴즈: {user_id}/{assessment_id} → {existing.id}")
        return existing.id

    record = grade(
        definition,
        answers,
        user_id=user_id,
        user_name=user_name,
        submitted_at=now,
        auto_submitted=auto_submitted,
    )

    try:
        stored = results.add_if_absent(record)
    except StoreError as e:
        logger.error(f"결과 저장 실패: {user_id}/{assessment_id} — {e}")
        raise SubmissionFailedError(str(e)) from e

    if stored.id != record.id:
        # 동시 제출 경쟁에서 진 쪽. 세션 정리는 이긴 쪽이 이미 했거나 할 것.
        logger.info(f"동시 제출 감지, 기존 결과 사용: {stored.id}")
    else:
        logger.info(
            f"채점 완료: {user_id}/{assessment_id} "
            f"{stored.score}/{stored.total_points}점 (자동 제출={auto_submitted})"
        )

    try:
        sessions.delete(user_id, assessment_id)
    except StoreError as e:
        logger.warning(f"세션 삭제 실패 (무시): {user_id}/{assessment_id} — {e}")

    return stored.id


# ── 결과 분석 ─────────────────────────────────────────────────────────────────

def calculate_percentage(result: ResultRecord) -> int:
    """
    100점 만점 환산 점수 (정수 반올림). 총점이 0이면 0.
    """
    if not result.total_points:
        return 0
    return round(result.score / result.total_points * 100)


def is_passed(percentage: float, pass_score: float = PASS_PERCENTAGE) -> bool:
    """percentage >= pass_score 이면 합격."""
    return percentage >= pass_score


def is_excellent(percentage: float, threshold: float = EXCELLENT_PERCENTAGE) -> bool:
    return percentage >= threshold


def summarize_result(result: ResultRecord) -> Dict[str, object]:
    """
    결과 화면용 요약.

    Returns:
        {"result_id", "assessment_id", "score", "total_points", "percentage",
         "passed", "excellent", "total", "correct_count", "incorrect_count",
         "unanswered_count", "wrong_question_ids", "submitted_at",
         "auto_submitted"}
    """
    percentage = calculate_percentage(result)
    correct = sum(1 for a in result.answers if a.is_correct)
    unanswered = sum(1 for a in result.answers if a.selected_option is None)
    return {
        "result_id": result.id,
        "assessment_id": result.assessment_id,
        "user_name": result.user_name,
        "score": result.score,
        "total_points": result.total_points,
        "percentage": percentage,
        "passed": is_passed(percentage),
        "excellent": is_excellent(percentage),
        "total": len(result.answers),
        "correct_count": correct,
        "incorrect_count": len(result.answers) - correct - unanswered,
        "unanswered_count": unanswered,
        "wrong_question_ids": list(result.wrong_question_ids),
        "submitted_at": result.submitted_at,
        "auto_submitted": result.auto_submitted,
    }


def summarize_grade_book(results: List[ResultRecord]) -> Dict[str, object]:
    """
    성적표 요약. 평균은 퀴즈별 백분율의 단순 평균이 아니라 배점 가중 평균
    (획득 점수 합 / 총점 합).

    Returns:
        {"count", "earned_points", "total_points", "average_percentage"}
        결과가 없으면 average_percentage는 0.
    """
    earned = sum(r.score for r in results)
    total = sum(r.total_points for r in results)
    return {
        "count": len(results),
        "earned_points": earned,
        "total_points": total,
        "average_percentage": round(earned / total * 100) if total else 0,
    }


def build_review(
    result: ResultRecord,
    definition: Optional[AssessmentDefinition],
) -> List[Dict[str, object]]:
    """
    오답 복습용 문제별 내역. 정의가 없으면(삭제된 퀴즈) 채점 내역만 반환.
    """
    review: List[Dict[str, object]] = []
    for a in result.answers:
        item: Dict[str, object] = {
            "question_id": a.question_id,
            "selected_option": a.selected_option,
            "is_correct": a.is_correct,
            "points": a.points,
        }
        q = definition.get_question(a.question_id) if definition else None
        if q is not None:
            item.update({
                "text": q.text,
                "options": q.options,
                "correct_option": q.correct_option,
                "explanation": q.explanation,
            })
        review.append(item)
    return review
