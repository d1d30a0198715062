"""
api/routes.py — FastAPI 엔드포인트
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

import api.session as session
from config import DELETED_ASSESSMENT_TITLE, DEFAULT_USER_NAME
from timed_quiz.errors import (
    AssessmentNotFoundError,
    InvalidAnswerError,
    SessionStateError,
    StoreError,
    SubmissionFailedError,
)
from timed_quiz.models.assessment_model import AssessmentDefinition, Question
from timed_quiz.models.result_model import ResultRecord
from timed_quiz.models.session_state import Redirect, SessionState
from timed_quiz.services.grading_service import (
    build_review,
    summarize_grade_book,
    summarize_result,
)
from timed_quiz.services.session_controller import SessionController

logger = logging.getLogger(__name__)

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class AnswerBody(BaseModel):
    question_id: str
    option: str

class SubmitBody(BaseModel):
    automatic: bool = False


# ── 헬퍼 ─────────────────────────────────────────────────────────────────────

def _question_to_dict(q: Question) -> dict:
    # 정답/해설은 제출 전 클라이언트에 보내지 않는다
    return {
        "id": q.id,
        "text": q.text,
        "options": q.options,
        "points": q.points,
    }


def _assessment_to_dict(a: AssessmentDefinition, with_questions: bool = True) -> dict:
    d = {
        "id": a.id,
        "title": a.title,
        "description": a.description,
        "duration": a.duration,
        "total_points": a.total_points,
        "question_count": len(a.questions),
    }
    if with_questions:
        d["questions"] = [_question_to_dict(q) for q in a.questions]
    return d


def _redirect_to_dict(r: Redirect) -> dict:
    return {"status": "redirect", "result_id": r.result_id, "reason": r.reason}


def _require_user(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="로그인이 필요합니다.")
    return x_user_id.strip()


def _make_controller(request: Request, user_name: Optional[str]) -> SessionController:
    st = request.app.state
    return SessionController(
        st.assessments,
        st.sessions,
        st.results,
        clock=st.clock,
        user_name=(user_name or "").strip() or DEFAULT_USER_NAME,
    )


def _open_controller(
    request: Request, user_id: str, assessment_id: str, user_name: Optional[str]
):
    """
    레지스트리에서 컨트롤러를 꺼낸다. 없으면 만들어 initialize()까지 수행.

    Returns:
        (컨트롤러, initialize 결과 또는 None)
    """
    ctrl, created = session.get_or_create(
        user_id, assessment_id, lambda: _make_controller(request, user_name)
    )
    if not created:
        return ctrl, None
    try:
        outcome = ctrl.initialize(user_id, assessment_id)
    except AssessmentNotFoundError:
        session.discard(user_id, assessment_id)
        raise HTTPException(status_code=404, detail="퀴즈를 찾을 수 없습니다.")
    except StoreError as e:
        session.discard(user_id, assessment_id)
        raise _store_unavailable(e)
    except SubmissionFailedError:
        # 컨트롤러는 EXPIRED 상태로 남겨 두어 다음 요청에서 제출을 재시도
        raise HTTPException(status_code=503, detail="채점 결과 저장에 실패했습니다. 다시 시도해 주세요.")
    return ctrl, outcome


def _store_unavailable(e: StoreError) -> HTTPException:
    logger.error(f"저장소 오류: {e}")
    return HTTPException(status_code=503, detail="저장소 오류가 발생했습니다. 잠시 후 다시 시도해 주세요.")


def _attach_controller(
    request: Request, user_id: str, assessment_id: str, user_name: Optional[str]
) -> SessionController:
    """
    이미 시작된 응시의 컨트롤러를 가져온다. 새 응시는 절대 시작하지 않는다.

    레지스트리에서 빠진 경우(TTL 만료, 서버 재시작)에는 저장소에 세션이나 결과가
    있을 때만 다시 이어 붙인다. 둘 다 없으면 409 — 시작은 POST /session 만 가능.
    """
    ctrl = session.get_controller(user_id, assessment_id)
    if ctrl is not None:
        return ctrl

    st = request.app.state
    try:
        started = (
            st.sessions.get(user_id, assessment_id) is not None
            or st.results.find(user_id, assessment_id) is not None
        )
    except StoreError as e:
        raise _store_unavailable(e)
    if not started:
        raise HTTPException(status_code=409, detail="시작되지 않은 시험입니다.")

    ctrl, _ = _open_controller(request, user_id, assessment_id, user_name)
    return ctrl


def _load_own_result(request: Request, user_id: str, result_id: str) -> ResultRecord:
    try:
        result = request.app.state.results.get(result_id)
    except StoreError as e:
        raise _store_unavailable(e)
    if result is None or result.user_id != user_id:
        raise HTTPException(status_code=404, detail="결과 정보가 없습니다.")
    return result


# ── 엔드포인트 ───────────────────────────────────────────────────────────────

@router.get("/api/assessments")
def list_assessments(request: Request, x_user_id: Optional[str] = Header(None)):
    user_id = _require_user(x_user_id)
    st = request.app.state
    items = []
    for a in st.assessments.list_all():
        if not a.is_active:
            continue
        d = _assessment_to_dict(a, with_questions=False)
        try:
            done = st.results.find(user_id, a.id)
        except StoreError as e:
            raise _store_unavailable(e)
        d["result_id"] = done.id if done else None
        items.append(d)
    return {"assessments": items}


@router.post("/api/assessments/{assessment_id}/session")
def start_session(
    assessment_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
):
    user_id = _require_user(x_user_id)
    ctrl, outcome = _open_controller(request, user_id, assessment_id, x_user_name)

    if outcome is None:
        # 이미 열려 있는 컨트롤러 → 현재 상태 기준으로 응답
        if ctrl.state is SessionState.GRADED:
            return _redirect_to_dict(Redirect(result_id=ctrl.result_id))
        try:
            remaining = ctrl.tick()
        except SubmissionFailedError:
            raise HTTPException(status_code=503, detail="채점 결과 저장에 실패했습니다. 다시 시도해 주세요.")
        except SessionStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if ctrl.state is SessionState.GRADED:
            return _redirect_to_dict(Redirect(result_id=ctrl.result_id, reason="expired"))
        return {
            "status": "active",
            "remaining_seconds": remaining,
            "answers": dict(ctrl.answers),
            "assessment": _assessment_to_dict(ctrl.definition),
        }

    if isinstance(outcome, Redirect):
        return _redirect_to_dict(outcome)
    return {
        "status": "active",
        "remaining_seconds": outcome.remaining_seconds,
        "answers": outcome.answers,
        "assessment": _assessment_to_dict(outcome.assessment),
    }


@router.post("/api/assessments/{assessment_id}/answers")
def save_answer(
    assessment_id: str,
    body: AnswerBody,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
):
    user_id = _require_user(x_user_id)
    ctrl = _attach_controller(request, user_id, assessment_id, x_user_name)
    try:
        answers = ctrl.record_answer(body.question_id, body.option)
    except InvalidAnswerError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "ok": True,
        "answered_count": len(answers),
        "synced": not ctrl.has_unsynced_answers,
    }


@router.post("/api/assessments/{assessment_id}/tick")
def tick(
    assessment_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
):
    user_id = _require_user(x_user_id)
    ctrl = _attach_controller(request, user_id, assessment_id, x_user_name)
    try:
        remaining = ctrl.tick()
    except SubmissionFailedError:
        raise HTTPException(status_code=503, detail="채점 결과 저장에 실패했습니다. 다시 시도해 주세요.")
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "state": ctrl.state.value,
        "remaining_seconds": remaining,
        "result_id": ctrl.result_id,
    }


@router.post("/api/assessments/{assessment_id}/submit")
def submit(
    assessment_id: str,
    request: Request,
    body: Optional[SubmitBody] = None,
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
):
    user_id = _require_user(x_user_id)
    ctrl = _attach_controller(request, user_id, assessment_id, x_user_name)
    automatic = body.automatic if body else False
    try:
        result_id = ctrl.submit(is_automatic=automatic)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SubmissionFailedError:
        raise HTTPException(status_code=503, detail="채점 결과 저장에 실패했습니다. 다시 시도해 주세요.")
    return {"result_id": result_id, "ok": True}


@router.get("/api/assessments/{assessment_id}/result")
def get_assessment_result(
    assessment_id: str, request: Request, x_user_id: Optional[str] = Header(None)
):
    user_id = _require_user(x_user_id)
    try:
        result = request.app.state.results.find(user_id, assessment_id)
    except StoreError as e:
        raise _store_unavailable(e)
    if result is None:
        raise HTTPException(status_code=404, detail="결과 정보가 없습니다.")
    return summarize_result(result)


@router.get("/api/results")
def list_results(request: Request, x_user_id: Optional[str] = Header(None)):
    """성적표: 응시한 퀴즈 결과 목록 + 배점 가중 평균."""
    user_id = _require_user(x_user_id)
    st = request.app.state
    try:
        results = st.results.list_for_user(user_id)
    except StoreError as e:
        raise _store_unavailable(e)

    items = []
    for r in results:
        d = summarize_result(r)
        definition = st.assessments.get(r.assessment_id)
        d["title"] = definition.title if definition else DELETED_ASSESSMENT_TITLE
        items.append(d)
    return {"results": items, **summarize_grade_book(results)}


@router.get("/api/results/{result_id}")
def get_result(result_id: str, request: Request, x_user_id: Optional[str] = Header(None)):
    user_id = _require_user(x_user_id)
    return summarize_result(_load_own_result(request, user_id, result_id))


@router.get("/api/results/{result_id}/review")
def get_review(result_id: str, request: Request, x_user_id: Optional[str] = Header(None)):
    user_id = _require_user(x_user_id)
    result = _load_own_result(request, user_id, result_id)
    definition = request.app.state.assessments.get(result.assessment_id)
    return {
        "result_id": result.id,
        "assessment_id": result.assessment_id,
        "score": result.score,
        "total_points": result.total_points,
        "questions": build_review(result, definition),
    }
