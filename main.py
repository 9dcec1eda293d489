"""
main.py — 시험 세션 포털 백엔드 진입점

uvicorn으로 FastAPI 앱을 띄운다. Supabase 접속 정보가 없으면 시작하지 않는다.
"""

import os
import sys
import logging
import traceback

# ── 모듈 경로 (반드시 최상단) ────────────────────────────────────────────────
_BASE_DIR = os.path.dirname(os.path.abspath(__file__))
if _BASE_DIR not in sys.path:
    sys.path.insert(0, _BASE_DIR)

from config import (
    BASE_DIR, LOG_FILE, DEFAULT_HOST, DEFAULT_PORT,
    CLOCK_OFFSET_SECONDS, REQUIRE_RESUME_CONFIRMATION,
)

# ── 로깅 설정 ────────────────────────────────────────────────────────────────
try:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )
except PermissionError:
    # 로그 파일 점유 시 콘솔 출력만 사용
    logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)


def main() -> None:
    import uvicorn
    from api.app import create_app

    try:
        app = create_app()
    except RuntimeError as e:
        logger.error(f"앱 초기화 실패: {e}")
        sys.exit(1)

    logger.info(
        f"시험 세션 설정: 시계 보정 {CLOCK_OFFSET_SECONDS:+.0f}초, "
        f"이어서 응시 확인 {'사용' if REQUIRE_RESUME_CONFIRMATION else '안 함'}"
    )
    logger.info(f"Uvicorn 서버 시작 - {DEFAULT_HOST}:{DEFAULT_PORT}")
    try:
        uvicorn.run(app, host=DEFAULT_HOST, port=DEFAULT_PORT, log_level="info")
    except Exception:
        logger.error(f"서버 오류 발생:\n{traceback.format_exc()}")
        sys.exit(1)


if __name__ == "__main__":
    logger.info("=== Exam Session Portal Started ===")
    os.chdir(BASE_DIR)
    main()
