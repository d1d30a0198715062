"""
stores/memory.py — 인메모리 저장소 구현

프로세스 하나 안에서만 유효. 모든 read-modify-write는 저장소별 Lock 안에서
수행되고, 호출자에게는 항상 복사본을 돌려준다 (외부 변경이 저장 상태에 새지 않도록).
"""

import json
import logging
import threading
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from timed_quiz.errors import StoreError
from timed_quiz.models.assessment_model import AssessmentDefinition
from timed_quiz.models.result_model import ResultRecord
from timed_quiz.models.session_state import SessionRecord

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]


class InMemoryAssessmentStore:
    """퀴즈 정의 저장소. 샘플 데이터나 JSON 파일에서 적재한다."""

    def __init__(self, definitions: Optional[List[AssessmentDefinition]] = None):
        self._lock = threading.Lock()
        self._items: Dict[str, AssessmentDefinition] = {}
        for d in definitions or []:
            self.add(d)

    def add(self, definition: AssessmentDefinition) -> None:
        with self._lock:
            self._items[definition.id] = definition

    def get(self, assessment_id: str) -> Optional[AssessmentDefinition]:
        with self._lock:
            d = self._items.get(assessment_id)
        return d.model_copy(deep=True) if d else None

    def list_all(self) -> List[AssessmentDefinition]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._items.values()]

    def load_json(self, path: str) -> int:
        """
        JSON 파일(퀴즈 정의 배열)을 읽어 적재한다.

        Returns:
            적재된 퀴즈 수.

        Raises:
            ValueError: 파일 형식이 잘못되었거나 검증에 실패한 경우.
        """
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError("퀴즈 정의 파일은 JSON 배열이어야 합니다.")
        try:
            definitions = [AssessmentDefinition.model_validate(item) for item in raw]
        except ValidationError as e:
            raise ValueError(f"퀴즈 정의 검증 실패: {e}") from e
        for d in definitions:
            self.add(d)
        logger.info(f"퀴즈 정의 {len(definitions)}개 적재: {path}")
        return len(definitions)


class InMemorySessionStore:
    """진행 중 세션 레코드 저장소."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[_Key, SessionRecord] = {}

    def get(self, user_id: str, assessment_id: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self._records.get((user_id, assessment_id))
        return rec.model_copy(deep=True) if rec else None

    def create_if_absent(
        self, user_id: str, assessment_id: str, start_time: float
    ) -> SessionRecord:
        key = (user_id, assessment_id)
        with self._lock:
            rec = self._records.get(key)
            if rec is None:
                rec = SessionRecord(
                    user_id=user_id,
                    assessment_id=assessment_id,
                    start_time=start_time,
                    last_sync_time=start_time,
                )
                self._records[key] = rec
            return rec.model_copy(deep=True)

    def merge_answers(
        self,
        user_id: str,
        assessment_id: str,
        partial_answers: Dict[str, str],
        sync_time: float,
    ) -> Optional[SessionRecord]:
        key = (user_id, assessment_id)
        with self._lock:
            rec = self._records.get(key)
            if rec is None:
                return None
            rec.answers.update(partial_answers)
            rec.last_sync_time = sync_time
            return rec.model_copy(deep=True)

    def delete(self, user_id: str, assessment_id: str) -> None:
        with self._lock:
            self._records.pop((user_id, assessment_id), None)

    def list_records(self) -> List[SessionRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]


class InMemoryResultStore:
    """채점 결과 저장소. (user_id, assessment_id) 당 하나만 저장된다."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_id: Dict[str, ResultRecord] = {}
        self._by_key: Dict[_Key, str] = {}

    def get(self, result_id: str) -> Optional[ResultRecord]:
        with self._lock:
            r = self._by_id.get(result_id)
        return r.model_copy(deep=True) if r else None

    def find(self, user_id: str, assessment_id: str) -> Optional[ResultRecord]:
        with self._lock:
            rid = self._by_key.get((user_id, assessment_id))
            r = self._by_id.get(rid) if rid else None
        return r.model_copy(deep=True) if r else None

    def add_if_absent(self, record: ResultRecord) -> ResultRecord:
        with self._lock:
            rid = self._by_key.get(record.key)
            if rid is not None:
                return self._by_id[rid].model_copy(deep=True)
            if record.id in self._by_id:
                raise StoreError(f"결과 id 충돌: {record.id}")
            self._by_id[record.id] = record.model_copy(deep=True)
            self._by_key[record.key] = record.id
            return record.model_copy(deep=True)

    def list_for_user(self, user_id: str) -> List[ResultRecord]:
        with self._lock:
            items = [r.model_copy(deep=True) for r in self._by_id.values() if r.user_id == user_id]
        return sorted(items, key=lambda r: r.submitted_at)
