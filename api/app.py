"""
api/app.py — FastAPI 앱 인스턴스 + 저장소 구성 + 만료 세션 정리 스레드
"""

import logging
import threading
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import api.session as session
from api.routes import router
from api.sample_assessments import SAMPLE_ASSESSMENTS
from config import ASSESSMENTS_FILE, DATABASE_URL, SWEEP_INTERVAL
from timed_quiz.services.session_controller import finalize_expired_sessions
from timed_quiz.stores.memory import (
    InMemoryAssessmentStore,
    InMemoryResultStore,
    InMemorySessionStore,
)

logger = logging.getLogger(__name__)


def _build_stores(database_url: str, assessments_file: str):
    assessments = InMemoryAssessmentStore()
    if assessments_file:
        assessments.load_json(assessments_file)
    else:
        for a in SAMPLE_ASSESSMENTS:
            assessments.add(a)

    if database_url:
        from timed_quiz.stores.sql import SqlResultStore, SqlSessionStore, make_engine

        engine = make_engine(database_url)
        logger.info(f"SQL 저장소 사용: {engine.url.render_as_string(hide_password=True)}")
        return assessments, SqlSessionStore(engine), SqlResultStore(engine)

    logger.info("인메모리 저장소 사용 (재시작 시 세션/결과 소실)")
    return assessments, InMemorySessionStore(), InMemoryResultStore()


def create_app(
    database_url: str = DATABASE_URL,
    assessments_file: str = ASSESSMENTS_FILE,
    clock=time.time,
    start_sweeper: bool = True,
) -> FastAPI:
    app = FastAPI(title="Timed Quiz Session", docs_url=None, redoc_url=None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    assessments, sessions, results = _build_stores(database_url, assessments_file)
    app.state.assessments = assessments
    app.state.sessions = sessions
    app.state.results = results
    app.state.clock = clock

    app.include_router(router)

    @app.get("/api/health")
    def health():
        return {"ok": True}

    # 유휴 컨트롤러 정리 + 시간 초과 세션 자동 채점 (SWEEP_INTERVAL마다)
    def _sweep_loop():
        while True:
            time.sleep(SWEEP_INTERVAL)
            try:
                removed = session.cleanup_expired()
                if removed:
                    logger.info(f"유휴 세션 컨트롤러 {removed}개 정리")
                finalize_expired_sessions(assessments, sessions, results, clock())
            except Exception:
                logger.exception("만료 세션 정리 중 오류")

    if start_sweeper:
        t = threading.Thread(target=_sweep_loop, daemon=True)
        t.start()

    return app
