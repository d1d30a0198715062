import os

# 기본 디렉토리 설정
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# 경로 설정
LOG_FILE = os.path.join(BASE_DIR, "launch.log")

# 서버 설정
DEFAULT_HOST = os.getenv("HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))

# 저장소 설정 (비어 있으면 인메모리 저장소 사용)
DATABASE_URL = os.getenv("DATABASE_URL", "")
ASSESSMENTS_FILE = os.getenv("ASSESSMENTS_FILE", "")

# 세션 설정
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))       # 유휴 컨트롤러 만료 (1시간)
SWEEP_INTERVAL = int(os.getenv("SWEEP_INTERVAL", "60"))   # 만료 세션 정리 주기 (초)

# 채점 설정
PASS_PERCENTAGE = 50.0
EXCELLENT_PERCENTAGE = 85.0
DEFAULT_USER_NAME = "Student"
DELETED_ASSESSMENT_TITLE = "삭제된 퀴즈"
