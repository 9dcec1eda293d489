"""
services/errors.py

시험 세션 오류 분류와 작업 결과 모델.

상태 전이를 막는 오류는 예외로 던지지 않고 OperationResult로 반환한다.
GatewayError만 예외로, 저장소 계층에서 세션 컨트롤러까지만 전파된다.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_SUBMITTED = "already_submitted"
    WINDOW_NOT_OPEN = "window_not_open"
    PERSISTENCE_FAILURE = "persistence_failure"
    UPLOAD_PARTIAL_FAILURE = "upload_partial_failure"
    LOAD_ERROR = "load_error"
    INVALID_STATE = "invalid_state"
    FILE_LIMIT_EXCEEDED = "file_limit_exceeded"
    UNKNOWN_QUESTION = "unknown_question"
    UNSUPPORTED_MODALITY = "unsupported_modality"


class GatewayError(Exception):
    """저장소(Supabase) 호출 실패. 원래 예외는 __cause__로 보존된다."""

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"{operation}: {message}" if message else operation)


class SessionError(BaseModel):
    code: ErrorCode
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    """
    공개 작업의 결과.

    Attributes:
        ok:       전이(또는 작업) 성공 여부
        phase:    작업 후 세션 단계
        error:    실패 원인 (ok=False일 때)
        warnings: 성공했지만 알려야 하는 문제 (예: 일부 첨부 업로드 실패)
        noop:     이미 처리된 요청이라 아무 것도 하지 않았음 (중복 제출 등)
    """

    ok: bool
    phase: str
    error: Optional[SessionError] = None
    warnings: List[SessionError] = Field(default_factory=list)
    noop: bool = False


def session_error(code: ErrorCode, message: str, **details: Any) -> SessionError:
    return SessionError(code=code, message=message, details=details)
