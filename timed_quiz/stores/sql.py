"""
stores/sql.py — SQLAlchemy 기반 영속 저장소

테이블:
  - quiz_sessions : (user_id, assessment_id) 복합 기본키. 진행 중 세션.
  - quiz_results  : id 기본키 + (user_id, assessment_id) 유니크 제약. 최종 결과.

유니크 제약이 '한 사용자·한 퀴즈 = 결과 하나'를 DB 수준에서 보장한다.
세션 답안 병합은 트랜잭션 안에서 행을 잠근 뒤(with_for_update) 키 단위로 합친다.
SQLite는 행 잠금을 지원하지 않으므로 프로세스 내 Lock을 함께 사용한다.
"""

import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from timed_quiz.errors import StoreError
from timed_quiz.models.result_model import ResultRecord
from timed_quiz.models.session_state import SessionRecord

logger = logging.getLogger(__name__)

metadata = MetaData()

sessions_table = Table(
    "quiz_sessions",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("assessment_id", String(128), primary_key=True),
    Column("start_time", Float, nullable=False),
    Column("answers", JSON, nullable=False, default=dict),
    Column("last_sync_time", Float, nullable=True),
)

results_table = Table(
    "quiz_results",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("user_name", String(255), nullable=False, default=""),
    Column("assessment_id", String(128), nullable=False),
    Column("score", Integer, nullable=False),
    Column("total_points", Integer, nullable=False),
    Column("answers", JSON, nullable=False),
    Column("wrong_question_ids", JSON, nullable=False),
    Column("submitted_at", Float, nullable=False),
    Column("auto_submitted", Boolean, nullable=False, default=False),
    UniqueConstraint("user_id", "assessment_id", name="uq_quiz_results_user_assessment"),
)


def make_engine(url: str) -> Engine:
    """DB URL로 엔진을 만들고 테이블을 생성한다."""
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # 인메모리 SQLite는 커넥션마다 DB가 달라지므로 하나를 공유
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, future=True, **kwargs)
    metadata.create_all(engine)
    return engine


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        user_id=row.user_id,
        assessment_id=row.assessment_id,
        start_time=row.start_time,
        answers=dict(row.answers or {}),
        last_sync_time=row.last_sync_time,
    )


def _row_to_result(row) -> ResultRecord:
    return ResultRecord(
        id=row.id,
        user_id=row.user_id,
        user_name=row.user_name,
        assessment_id=row.assessment_id,
        score=row.score,
        total_points=row.total_points,
        answers=row.answers,
        wrong_question_ids=row.wrong_question_ids,
        submitted_at=row.submitted_at,
        auto_submitted=row.auto_submitted,
    )


class SqlSessionStore:
    """quiz_sessions 테이블 기반 세션 저장소."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._lock = threading.Lock()

    def _by_key(self, user_id: str, assessment_id: str):
        return select(sessions_table).where(
            sessions_table.c.user_id == user_id,
            sessions_table.c.assessment_id == assessment_id,
        )

    def get(self, user_id: str, assessment_id: str) -> Optional[SessionRecord]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(self._by_key(user_id, assessment_id)).first()
        except SQLAlchemyError as e:
            raise StoreError(f"세션 조회 실패: {e}") from e
        return _row_to_session(row) if row else None

    def create_if_absent(
        self, user_id: str, assessment_id: str, start_time: float
    ) -> SessionRecord:
        try:
            with self._lock:
                try:
                    with self._engine.begin() as conn:
                        row = conn.execute(self._by_key(user_id, assessment_id)).first()
                        if row is not None:
                            return _row_to_session(row)
                        conn.execute(
                            insert(sessions_table).values(
                                user_id=user_id,
                                assessment_id=assessment_id,
                                start_time=start_time,
                                answers={},
                                last_sync_time=start_time,
                            )
                        )
                except IntegrityError:
                    # 다른 프로세스가 먼저 생성 → 그쪽 start_time을 따른다
                    logger.info(f"세션 동시 생성 감지: {user_id}/{assessment_id}")
                with self._engine.connect() as conn:
                    row = conn.execute(self._by_key(user_id, assessment_id)).first()
        except SQLAlchemyError as e:
            raise StoreError(f"세션 생성 실패: {e}") from e
        if row is None:
            raise StoreError(f"세션 생성 직후 조회 실패: {user_id}/{assessment_id}")
        return _row_to_session(row)

    def merge_answers(
        self,
        user_id: str,
        assessment_id: str,
        partial_answers: Dict[str, str],
        sync_time: float,
    ) -> Optional[SessionRecord]:
        try:
            with self._lock, self._engine.begin() as conn:
                row = conn.execute(
                    self._by_key(user_id, assessment_id).with_for_update()
                ).first()
                if row is None:
                    return None
                merged = dict(row.answers or {})
                merged.update(partial_answers)
                conn.execute(
                    update(sessions_table)
                    .where(
                        sessions_table.c.user_id == user_id,
                        sessions_table.c.assessment_id == assessment_id,
                    )
                    .values(answers=merged, last_sync_time=sync_time)
                )
        except SQLAlchemyError as e:
            raise StoreError(f"답안 병합 실패: {e}") from e
        return SessionRecord(
            user_id=user_id,
            assessment_id=assessment_id,
            start_time=row.start_time,
            answers=merged,
            last_sync_time=sync_time,
        )

    def delete(self, user_id: str, assessment_id: str) -> None:
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(
                    delete(sessions_table).where(
                        sessions_table.c.user_id == user_id,
                        sessions_table.c.assessment_id == assessment_id,
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(f"세션 삭제 실패: {e}") from e

    def list_records(self) -> List[SessionRecord]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(select(sessions_table)).all()
        except SQLAlchemyError as e:
            raise StoreError(f"세션 목록 조회 실패: {e}") from e
        return [_row_to_session(r) for r in rows]


class SqlResultStore:
    """quiz_results 테이블 기반 결과 저장소."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def _select_one(self, *conditions) -> Optional[ResultRecord]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(results_table).where(*conditions)).first()
        except SQLAlchemyError as e:
            raise StoreError(f"결과 조회 실패: {e}") from e
        return _row_to_result(row) if row else None

    def get(self, result_id: str) -> Optional[ResultRecord]:
        return self._select_one(results_table.c.id == result_id)

    def find(self, user_id: str, assessment_id: str) -> Optional[ResultRecord]:
        return self._select_one(
            results_table.c.user_id == user_id,
            results_table.c.assessment_id == assessment_id,
        )

    def add_if_absent(self, record: ResultRecord) -> ResultRecord:
        values = record.model_dump()
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(results_table).values(**values))
            return record
        except IntegrityError:
            existing = self.find(record.user_id, record.assessment_id)
            if existing is None:
                raise StoreError(f"결과 저장 실패 (id 충돌): {record.id}")
            logger.info(
                f"이미 저장된 결과 반환: {record.user_id}/{record.assessment_id} → {existing.id}"
            )
            return existing
        except SQLAlchemyError as e:
            raise StoreError(f"결과 저장 실패: {e}") from e

    def list_for_user(self, user_id: str) -> List[ResultRecord]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    select(results_table)
                    .where(results_table.c.user_id == user_id)
                    .order_by(results_table.c.submitted_at)
                ).all()
        except SQLAlchemyError as e:
            raise StoreError(f"결과 목록 조회 실패: {e}") from e
        return [_row_to_result(r) for r in rows]
