"""
api/session.py — 진행 중인 세션 컨트롤러 레지스트리 (인메모리)

(user_id, assessment_id)별로 SessionController를 보관해 요청 사이에 재사용한다.
TTL(기본 1시간) 동안 접근이 없으면 제거된다. 제거되어도 상태는 저장소에 있으므로
다음 요청에서 initialize()로 다시 이어 붙는다. 레지스트리는 캐시일 뿐이다.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from config import SESSION_TTL
from timed_quiz.errors import QuizSessionError
from timed_quiz.services.session_controller import SessionController

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]

_lock = threading.Lock()
_controllers: Dict[_Key, SessionController] = {}
_timestamps: Dict[_Key, float] = {}


def get_controller(user_id: str, assessment_id: str) -> Optional[SessionController]:
    """보관 중인 컨트롤러. 만료되었거나 없으면 None.
    미동기화 답안이 있는 컨트롤러는 TTL이 지나도 돌려준다."""
    key = (user_id, assessment_id)
    with _lock:
        if key not in _controllers:
            return None
        if time.time() - _timestamps[key] > SESSION_TTL and not _controllers[key].has_unsynced_answers:
            del _controllers[key]
            del _timestamps[key]
            return None
        _timestamps[key] = time.time()  # 접근 시 갱신
        return _controllers[key]


def get_or_create(
    user_id: str,
    assessment_id: str,
    factory: Callable[[], SessionController],
) -> Tuple[SessionController, bool]:
    """
    컨트롤러를 가져오거나 새로 만든다.

    Returns:
        (컨트롤러, 새로 만들었는지 여부). 새로 만든 컨트롤러는 아직 initialize 전.
    """
    key = (user_id, assessment_id)
    existing = get_controller(user_id, assessment_id)
    if existing is not None:
        return existing, False
    with _lock:
        if key in _controllers:
            _timestamps[key] = time.time()
            return _controllers[key], False
        ctrl = factory()
        _controllers[key] = ctrl
        _timestamps[key] = time.time()
        return ctrl, True


def discard(user_id: str, assessment_id: str) -> None:
    """컨트롤러 제거 (초기화 실패 등)."""
    key = (user_id, assessment_id)
    with _lock:
        _controllers.pop(key, None)
        _timestamps.pop(key, None)


def reset() -> None:
    """레지스트리 전체 초기화."""
    with _lock:
        _controllers.clear()
        _timestamps.clear()


def cleanup_expired() -> int:
    """
    만료된 컨트롤러를 정리. 제거된 수 반환.

    저장소에 반영되지 않은 답안이 남은 컨트롤러는 한 번 더 동기화(tick)해 보고,
    그래도 남아 있으면 제거하지 않고 다음 정리 때 다시 시도한다.
    """
    now = time.time()
    with _lock:
        expired = {k: c for k, c in _controllers.items() if now - _timestamps[k] > SESSION_TTL}

    # 동기화는 레지스트리 락 밖에서
    evictable = [k for k, c in expired.items() if _flush_before_evict(c)]

    removed = 0
    with _lock:
        for k in evictable:
            # 그 사이 다시 접근된 컨트롤러는 남긴다
            if k in _timestamps and now - _timestamps[k] > SESSION_TTL:
                del _controllers[k]
                del _timestamps[k]
                removed += 1
    return removed


def _flush_before_evict(ctrl: SessionController) -> bool:
    if not ctrl.has_unsynced_answers:
        return True
    try:
        ctrl.tick()
    except QuizSessionError as e:
        logger.warning(f"제거 전 동기화 실패, 컨트롤러 유지: {ctrl.user_id}/{ctrl.assessment_id} — {e}")
        return False
    if ctrl.has_unsynced_answers:
        logger.warning(f"미동기화 답안 남음, 컨트롤러 유지: {ctrl.user_id}/{ctrl.assessment_id}")
        return False
    return True
