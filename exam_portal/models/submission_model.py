"""
models/submission_model.py

학생 한 명의 시험 응시 기록(exam_submissions 행) 모델.
(exam, student) 쌍당 유효한 기록은 하나뿐이며,
status가 submitted가 되면 더 이상 수정하지 않는다.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from exam_portal.models.exam_model import ensure_aware


class SubmissionStatus(str, Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"
    SUBMITTED = "submitted"
    GRADED = "graded"


class ExamSubmission(BaseModel):
    id: str
    exam_id: str
    student_id: str
    status: SubmissionStatus = SubmissionStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    answers: Dict[str, Any] = Field(default_factory=dict, description="문항 ID → 답안")
    answer_text: str = Field("", description="서술형(written_online) 답안 본문")
    answer_files: List[str] = Field(default_factory=list, description="업로드된 답안 파일 URL")
    updated_at: Optional[datetime] = None

    @field_validator("id", "exam_id", "student_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if v is None:
            return SubmissionStatus.NOT_STARTED
        return v.lower() if isinstance(v, str) else v

    @field_validator("answers", mode="before")
    @classmethod
    def decode_answers(cls, v):
        # 문자열(JSON)로 저장된 기록도 있다
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            try:
                decoded = json.loads(v)
            except json.JSONDecodeError:
                return {}
            return decoded if isinstance(decoded, dict) else {}
        return {str(k): val for k, val in v.items()}

    @field_validator("answer_text", mode="before")
    @classmethod
    def default_text(cls, v):
        return v or ""

    @field_validator("answer_files", mode="before")
    @classmethod
    def default_files(cls, v):
        return v or []

    @field_validator("started_at", "submitted_at", "updated_at")
    @classmethod
    def attach_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(v) if v is not None else None

    @property
    def is_sealed(self) -> bool:
        """제출(또는 채점) 완료되어 더 이상 수정할 수 없는 상태인지 여부."""
        return self.status in (SubmissionStatus.SUBMITTED, SubmissionStatus.GRADED)

    @property
    def is_in_progress(self) -> bool:
        return self.status == SubmissionStatus.STARTED
