"""
api/app.py — FastAPI 앱 인스턴스 + 세션 미들웨어 + 만료 세션 정리
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from config import CLOCK_OFFSET_SECONDS, SESSION_SWEEP_INTERVAL
from api.routes import router
import api.session as session
from exam_portal.services.clock import ClockSource, OffsetClock
from exam_portal.services.errors import ErrorCode, GatewayError
from exam_portal.services.supabase_gateway import PersistenceGateway, SupabaseGateway

SESSION_COOKIE = "exam_session"

logger = logging.getLogger(__name__)


def create_app(
    gateway: Optional[PersistenceGateway] = None,
    clock: Optional[ClockSource] = None,
    **controller_options: Any,
) -> FastAPI:
    """
    Args:
        gateway:            저장소 구현 (없으면 환경 변수로 Supabase 연결)
        clock:              현재 시각 공급원 (없으면 CLOCK_OFFSET_SECONDS 보정 시계)
        controller_options: ExamSessionController 키워드 인자 (tick_interval 등)
    """

    # 만료 세션 주기적 정리 (5분마다)
    async def _cleanup_loop():
        while True:
            await asyncio.sleep(SESSION_SWEEP_INTERVAL)
            removed = session.cleanup_expired()
            if removed:
                logger.info(f"만료 세션 {removed}개 정리")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_cleanup_loop())
        try:
            yield
        finally:
            sweeper.cancel()
            closed = session.close_all()
            logger.info(f"서버 종료: 세션 {closed}개 해제")

    app = FastAPI(title="Exam Session Portal", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.gateway = gateway or SupabaseGateway.from_config()
    app.state.clock = clock or OffsetClock(CLOCK_OFFSET_SECONDS)
    app.state.controller_options = controller_options

    # CORS (포털 프런트엔드 등 다양한 출처 허용)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 세션 미들웨어: 쿠키에서 세션 ID를 읽고, 없으면 새로 발급
    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        sid = request.cookies.get(SESSION_COOKIE)
        if not sid or not session.is_alive(sid):
            sid = session.create_session()

        request.state.session_id = sid
        response: Response = await call_next(request)
        response.set_cookie(
            key=SESSION_COOKIE,
            value=sid,
            httponly=True,
            samesite="lax",
            max_age=session.SESSION_TTL,
        )
        return response

    # 라우트에서 처리하지 않은 저장소 오류
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(f"처리되지 않은 저장소 오류 ({request.url.path}): {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": {
                "code": ErrorCode.PERSISTENCE_FAILURE.value,
                "message": "저장소에 연결할 수 없습니다. 잠시 후 다시 시도해 주세요.",
                "details": {"operation": exc.operation},
            }},
        )

    app.include_router(router)
    return app
