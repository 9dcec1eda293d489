"""
models/exam_model.py

시험(Exam) 및 문항(Question) 모델.
외부 일정 관리 프로세스가 생성하며, 시험 세션 동안에는 읽기 전용.
Pydantic v2 적용
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config import EXAM_UTC_OFFSET_HOURS

EXAM_TZ = timezone(timedelta(hours=EXAM_UTC_OFFSET_HOURS), "EAT")

_PLACEHOLDER = "NA"
_DEFAULT_DESCRIPTION = "Final examination for the course"
_DEFAULT_INSTRUCTIONS = "Complete all questions within the given time frame."


class ExamModality(str, Enum):
    ONLINE = "online"
    WRITTEN_ONLINE = "written_online"
    PHYSICAL = "physical"


def ensure_aware(value: datetime) -> datetime:
    """오프셋 없는 시각은 시험 시간대(EAT)로 간주한다."""
    if value.tzinfo is None:
        return value.replace(tzinfo=EXAM_TZ)
    return value


class Question(BaseModel):
    """
    구조화 시험(online)의 단일 문항.
    """
    id: str = Field(
        ...,
        description="문항 식별자"
    )
    exam_id: Optional[str] = Field(
        None,
        description="소속 시험 식별자"
    )
    question_text: str = Field(
        ...,
        min_length=1,
        description="문제 본문"
    )
    marks: int = Field(
        0,
        ge=0,
        description="배점"
    )
    sequence: int = Field(
        0,
        description="출제 순서"
    )
    options: Optional[List[str]] = Field(
        None,
        description="객관식 보기 (서술형이면 None)"
    )
    max_words: Optional[int] = Field(
        None,
        description="서술형 단어 수 제한"
    )

    @field_validator("id", "exam_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("options")
    @classmethod
    def validate_options_length(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """
        보기가 있다면 최소 2개 이상이어야 한다.
        """
        if v is not None and len(v) < 2:
            raise ValueError("보기(options)는 최소 2개 이상의 항목이 필요합니다.")
        return v


class Exam(BaseModel):
    """
    시험 세션 동안 변하지 않는 시험 정보.
    start_time / end_time은 서버가 발급한 값으로 신뢰한다.
    """
    id: str
    title: str = ""
    description: str = ""
    course_id: Optional[str] = None
    course_code: str = "N/A"
    exam_type: ExamModality = ExamModality.ONLINE
    start_time: datetime
    end_time: datetime
    duration_minutes: int = Field(60, gt=0)
    total_marks: int = 100
    passing_marks: Optional[int] = None
    instructions: str = ""
    exam_files: List[str] = Field(default_factory=list, description="시험지 첨부 경로")
    questions: List[Question] = Field(default_factory=list)

    @field_validator("id", "course_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("exam_type", mode="before")
    @classmethod
    def default_exam_type(cls, v):
        return v or ExamModality.ONLINE

    @field_validator("duration_minutes", "total_marks", mode="before")
    @classmethod
    def default_numbers(cls, v, info):
        if v is None:
            return 60 if info.field_name == "duration_minutes" else 100
        return v

    @field_validator("exam_files", mode="before")
    @classmethod
    def default_files(cls, v):
        return v or []

    @field_validator("start_time", "end_time")
    @classmethod
    def attach_timezone(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode="after")
    def normalize(self) -> "Exam":
        if self.end_time <= self.start_time:
            raise ValueError("시험 종료 시각은 시작 시각보다 늦어야 합니다.")
        # 플레이스홀더("NA") 값 치환
        if not self.title or self.title == _PLACEHOLDER:
            self.title = f"{self.course_code} Final"
        if not self.description or self.description == _PLACEHOLDER:
            self.description = _DEFAULT_DESCRIPTION
        if not self.instructions or self.instructions == _PLACEHOLDER:
            self.instructions = _DEFAULT_INSTRUCTIONS
        return self

    @property
    def is_online(self) -> bool:
        return self.exam_type in (ExamModality.ONLINE, ExamModality.WRITTEN_ONLINE)

    @property
    def is_structured(self) -> bool:
        """문항별 답안(answers 맵)으로 제출하는 시험인지 여부."""
        return self.exam_type == ExamModality.ONLINE and bool(self.questions)

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)


class ExamOverview(BaseModel):
    """시험 목록 화면에 표시하는 학생별 시험 상태."""
    exam_id: str
    title: str
    exam_type: ExamModality
    status: str = Field(..., description="graded | submitted | active | upcoming | ended")
    is_online: bool
    can_start: bool
    can_resume: bool
    time_until_start: str
    start_time: datetime
    end_time: datetime
