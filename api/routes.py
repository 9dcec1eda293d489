"""
api/routes.py — FastAPI 엔드포인트

학생 식별자는 상위 인증 계층이 넣어 주는 X-Student-Id 헤더로 받는다.
컨트롤러가 반환한 실패 결과는 {"code", "message", "details"} 형태의 HTTPException으로 변환.
"""

from typing import Any, Optional

from fastapi import APIRouter, File, Header, HTTPException, Request, UploadFile
from pydantic import BaseModel

import api.session as session
from exam_portal.services.errors import ErrorCode, OperationResult
from exam_portal.services.exam_service import answered_progress, classify_exam
from exam_portal.services.exam_session import ExamSessionController

router = APIRouter()

# ── Pydantic request bodies ──────────────────────────────────────────────────

class AnswerBody(BaseModel):
    question_id: Optional[str] = None  # None이면 서술형 답안 본문
    value: Any = None


# ── 헬퍼 ─────────────────────────────────────────────────────────────────────

_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_SUBMITTED: 409,
    ErrorCode.WINDOW_NOT_OPEN: 409,
    ErrorCode.PERSISTENCE_FAILURE: 503,
    ErrorCode.LOAD_ERROR: 503,
    ErrorCode.UPLOAD_PARTIAL_FAILURE: 502,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.UNSUPPORTED_MODALITY: 400,
    ErrorCode.FILE_LIMIT_EXCEEDED: 413,
    ErrorCode.UNKNOWN_QUESTION: 422,
}


def _student_id(x_student_id: Optional[str]) -> str:
    if not x_student_id or not x_student_id.strip():
        raise HTTPException(status_code=401, detail="학생 인증 정보가 없습니다.")
    return x_student_id.strip()


def _session_view(controller: ExamSessionController) -> dict:
    d = controller.snapshot().model_dump(mode="json")
    if controller.exam is not None and controller.exam.is_structured:
        d["progress"] = answered_progress(controller.exam, controller.buffer.answers)
    return d


def _respond(controller: ExamSessionController, result: OperationResult) -> dict:
    if not result.ok:
        err = result.error
        raise HTTPException(
            status_code=_STATUS_BY_CODE.get(err.code, 400),
            detail={"code": err.code.value, "message": err.message, "details": err.details},
        )
    return {
        "ok": True,
        "noop": result.noop,
        "warnings": [w.model_dump(mode="json") for w in result.warnings],
        "session": _session_view(controller),
    }


def _controller(request: Request, exam_id: str, student_id: str) -> ExamSessionController:
    controller = session.get_controller(request.state.session_id, exam_id)
    if controller is None or controller.snapshot().student_id != student_id:
        raise HTTPException(status_code=404, detail="시험 세션이 없습니다.")
    return controller


# ── 엔드포인트 ───────────────────────────────────────────────────────────────

@router.post("/api/exams/{exam_id}/session")
async def load_session(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    student_id = _student_id(x_student_id)
    app_state = request.app.state
    controller = ExamSessionController(
        app_state.gateway, app_state.clock, **app_state.controller_options
    )
    result = await controller.load(exam_id, student_id)

    if not result.ok and result.error.code is not ErrorCode.ALREADY_SUBMITTED:
        controller.close()
        return _respond(controller, result)

    session.set_controller(request.state.session_id, exam_id, controller)
    return {
        "ok": True,
        "noop": False,
        "warnings": [w.model_dump(mode="json") for w in result.warnings],
        "session": _session_view(controller),
    }


@router.get("/api/exams/{exam_id}/session")
async def get_session_state(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _session_view(controller)


@router.post("/api/exams/{exam_id}/session/start")
async def confirm_start(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, await controller.confirm_start())


@router.put("/api/exams/{exam_id}/session/answer")
async def set_answer(exam_id: str, body: AnswerBody, request: Request,
                     x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, controller.set_answer(body.question_id, body.value))


@router.post("/api/exams/{exam_id}/session/files")
async def add_file(exam_id: str, request: Request, file: UploadFile = File(...),
                   x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    content = await file.read()
    result = controller.add_file(file.filename or "answer", content, file.content_type or "")
    return _respond(controller, result)


@router.delete("/api/exams/{exam_id}/session/files/{index}")
async def remove_file(exam_id: str, index: int, request: Request,
                      x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, controller.remove_file(index))


@router.post("/api/exams/{exam_id}/session/save")
async def save_progress(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, await controller.save_progress())


@router.post("/api/exams/{exam_id}/session/submit")
async def submit_exam(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, await controller.submit())


@router.post("/api/exams/{exam_id}/session/exit")
async def exit_exam(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    controller = _controller(request, exam_id, _student_id(x_student_id))
    return _respond(controller, await controller.exit())


@router.get("/api/exams/{exam_id}/overview")
async def exam_overview(exam_id: str, request: Request, x_student_id: Optional[str] = Header(None)):
    student_id = _student_id(x_student_id)
    gateway = request.app.state.gateway
    # GatewayError는 앱 예외 핸들러가 503으로 변환
    exam = await gateway.fetch_exam(exam_id)
    if exam is None:
        raise HTTPException(status_code=404, detail="시험을 찾을 수 없습니다.")
    submission = await gateway.fetch_submission(exam_id, student_id)
    overview = classify_exam(exam, submission, request.app.state.clock.now())
    return overview.model_dump(mode="json")
