import os

# 기본 디렉토리 설정
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# 경로 설정
LOG_FILE = os.path.join(BASE_DIR, "launch.log")

# 서버 설정
DEFAULT_HOST = os.getenv("HOST", "0.0.0.0")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))

# Supabase 설정
SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "").strip()

EXAMS_TABLE = os.getenv("EXAMS_TABLE", "examinations")
SUBMISSIONS_TABLE = os.getenv("SUBMISSIONS_TABLE", "exam_submissions")
QUESTIONS_TABLE = os.getenv("QUESTIONS_TABLE", "exam_questions")
COURSES_TABLE = os.getenv("COURSES_TABLE", "courses")
ANSWER_FILES_BUCKET = os.getenv("ANSWER_FILES_BUCKET", "Student exam")

# 시험 시각 설정
EXAM_UTC_OFFSET_HOURS = int(os.getenv("EXAM_UTC_OFFSET_HOURS", "3"))   # EAT (UTC+3)
CLOCK_OFFSET_SECONDS = float(os.getenv("CLOCK_OFFSET_SECONDS", "0"))  # 로컬 시계 보정값

# 시험 세션 설정
TICK_INTERVAL_SECONDS = 1.0          # 타이머 갱신 주기
AUTO_SAVE_INTERVAL_SECONDS = 30.0    # 자동 저장 주기
MAX_ANSWER_FILES = 5                 # 답안 첨부 파일 최대 개수
MAX_ANSWER_FILE_SIZE = 20 * 1024 * 1024  # 20 MB
REQUIRE_RESUME_CONFIRMATION = os.getenv("REQUIRE_RESUME_CONFIRMATION", "0").lower() in ("1", "true", "yes")
TIME_WARNING_SECONDS = 600           # 10분 미만이면 경고

# 브라우저 세션 설정
SESSION_TTL = 3600            # 1시간
SESSION_SWEEP_INTERVAL = 300  # 5분마다 만료 세션 정리
