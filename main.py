"""
main.py — 시간제한 퀴즈 세션 서버 진입점
"""

import logging
import sys
import traceback

from config import DEFAULT_HOST, DEFAULT_PORT, LOG_FILE

# ── 로깅 설정 ────────────────────────────────────────────────────────────────
try:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )
except PermissionError:
    # 로그 파일 점유 시 콘솔 출력만 사용
    logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)


def _start_server(host: str, port: int) -> None:
    try:
        import uvicorn
        from api.app import create_app
        logger.info(f"Uvicorn 서버 시작 - {host}:{port}")
        app = create_app()
        uvicorn.run(app, host=host, port=port, log_level="info")
    except Exception:
        logger.error(f"서버 오류 발생:\n{traceback.format_exc()}")
        sys.exit(1)


# ── 메인 실행 ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("=== Timed Quiz Session Server Started ===")
    try:
        _start_server(DEFAULT_HOST, DEFAULT_PORT)
    except KeyboardInterrupt:
        logger.info("사용자에 의해 종료되었습니다.")
