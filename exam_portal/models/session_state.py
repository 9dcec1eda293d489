"""
models/session_state.py

시험 세션 진행 상태 모델.
답안 버퍼(AnswerBuffer), 타이머 파생값(TimerState), 세션 단계(SessionPhase),
UI 재렌더링용 스냅샷(SessionSnapshot).
스냅샷은 on_change 훅과 HTTP 응답에 그대로 직렬화된다.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from exam_portal.services.errors import SessionError


class SessionPhase(str, Enum):
    LOADING = "loading"
    NOT_YET_OPEN = "not_yet_open"
    READY_TO_CONFIRM = "ready_to_confirm"
    RESUMABLE = "resumable"
    ACTIVE = "active"
    EXPIRED = "expired"
    SUBMITTED = "submitted"
    INTERRUPTED = "interrupted"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.SUBMITTED, SessionPhase.EXPIRED, SessionPhase.ERROR)


class PendingFile(BaseModel):
    """아직 업로드되지 않은 로컬 첨부 파일."""
    name: str = Field(..., min_length=1)
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


class AnswerBuffer(BaseModel):
    """
    실행 중인 세션만 소유하는 임시 답안 상태.

    Attributes:
        answers:       문항별 답안. {question.id: 답안 값}
        text:          서술형 답안 본문 (문항 구분 없는 시험용)
        pending_files: 제출 시 업로드할 첨부 파일
        uploaded_urls: 이미 업로드에 성공한 파일 URL (재제출 시 중복 업로드 방지)
    """

    answers: Dict[str, Any] = Field(
        default_factory=dict,
        description="문항 ID → 답안 값"
    )
    text: str = Field(
        default="",
        description="서술형 답안 본문"
    )
    pending_files: List[PendingFile] = Field(
        default_factory=list,
        description="업로드 대기 중인 첨부 파일"
    )
    uploaded_urls: List[str] = Field(
        default_factory=list,
        description="업로드 완료된 첨부 파일 URL"
    )

    def set(self, question_id: Optional[str], value: Any) -> None:
        if question_id is None:
            self.text = "" if value is None else str(value)
            return
        if value is None or value == "":
            self.answers.pop(question_id, None)
        else:
            self.answers[question_id] = value

    @property
    def answered_count(self) -> int:
        return len(self.answers)


class TimerState(BaseModel):
    """
    매 틱마다 시험 고정 시각과 현재 시각으로부터 다시 계산하는 파생값.
    저장하지 않는다. 시간 단위는 모두 초.
    """

    now: datetime
    deadline: datetime = Field(..., description="이번 응시의 마감 시각")
    time_until_start: float = Field(0.0, ge=0)
    time_remaining: float = Field(0.0, ge=0)
    time_elapsed: float = Field(0.0, ge=0)
    is_started: bool = False
    is_ended: bool = False
    is_time_up: bool = False
    is_warning: bool = False


class SessionSnapshot(BaseModel):
    """UI 재렌더링 훅에 전달하는 세션 상태 사본."""

    exam_id: Optional[str] = None
    student_id: Optional[str] = None
    submission_id: Optional[str] = None
    phase: SessionPhase
    timer: Optional[TimerState] = None
    answers: Dict[str, Any] = Field(default_factory=dict)
    text: str = ""
    pending_files: List[str] = Field(default_factory=list)
    uploaded_urls: List[str] = Field(default_factory=list)
    last_saved_at: Optional[datetime] = None
    last_autosave_error: Optional[str] = None
    error: Optional[SessionError] = None
    notices: List[str] = Field(default_factory=list)
