"""
services/supabase_gateway.py

시험 세션이 사용하는 원격 저장소 계층.
Public API (PersistenceGateway):
  - fetch_exam(exam_id) -> Exam | None
  - fetch_submission(exam_id, student_id) -> ExamSubmission | None
  - create_submission(exam_id, student_id, status, started_at) -> ExamSubmission
  - update_submission(submission_id, fields) -> ExamSubmission | None
  - upload_file(owner_path, file) -> str (공개 URL)
  - fetch_questions(exam_id) -> List[Question]

설계 원칙:
- 최소 1회 전달(at-least-once), 호출 간 트랜잭션 없음
- "행 없음"은 예외가 아니라 None
- 전송/저장소 오류는 GatewayError로 감싸서 올린다
- 동기 supabase 클라이언트 호출은 asyncio.to_thread에서 실행한다
"""

import asyncio
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError
from supabase import Client, create_client

from config import (
    SUPABASE_URL, SUPABASE_KEY,
    EXAMS_TABLE, SUBMISSIONS_TABLE, QUESTIONS_TABLE, COURSES_TABLE,
    ANSWER_FILES_BUCKET,
)
from exam_portal.models.exam_model import Exam, Question
from exam_portal.models.session_state import PendingFile
from exam_portal.models.submission_model import ExamSubmission, SubmissionStatus
from exam_portal.services.errors import GatewayError

logger = logging.getLogger(__name__)

_SEALED_STATUSES = (SubmissionStatus.SUBMITTED.value, SubmissionStatus.GRADED.value)


class PersistenceGateway(Protocol):
    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        ...

    async def fetch_submission(self, exam_id: str, student_id: str) -> Optional[ExamSubmission]:
        ...

    async def create_submission(
        self,
        exam_id: str,
        student_id: str,
        status: SubmissionStatus,
        started_at: datetime,
    ) -> ExamSubmission:
        ...

    async def update_submission(
        self, submission_id: str, fields: Dict[str, Any]
    ) -> Optional[ExamSubmission]:
        ...

    async def upload_file(self, owner_path: str, file: PendingFile) -> str:
        ...

    async def fetch_questions(self, exam_id: str) -> List[Question]:
        ...


def _to_row_value(value: Any) -> Any:
    """datetime / Enum 등을 Supabase JSON 값으로 변환."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _to_row_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_row_value(v) for v in value]
    return value


def to_row(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _to_row_value(v) for k, v in fields.items()}


class SupabaseGateway:
    """supabase-py 클라이언트 기반 PersistenceGateway 구현."""

    def __init__(self, client: Client, bucket: str = ANSWER_FILES_BUCKET):
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_config(cls) -> "SupabaseGateway":
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL 또는 SUPABASE_KEY 환경 변수가 설정되지 않았습니다.")
        return cls(create_client(SUPABASE_URL, SUPABASE_KEY))

    async def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Supabase 호출 실패 ({operation}): {e}")
            raise GatewayError(operation, str(e)) from e

    # ── 시험 / 문항 ──────────────────────────────────────────────────────────

    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        res = await self._call(
            "fetch_exam",
            lambda: self._client.table(EXAMS_TABLE).select("*").eq("id", exam_id).limit(1).execute(),
        )
        rows = res.data or []
        if not rows:
            return None
        row = dict(rows[0])

        # 과목 정보는 없어도 시험은 진행 가능
        if row.get("course_id"):
            try:
                course = await self._call(
                    "fetch_course",
                    lambda: self._client.table(COURSES_TABLE)
                    .select("course_code, course_name")
                    .eq("id", row["course_id"])
                    .limit(1)
                    .execute(),
                )
                if course.data:
                    row["course_code"] = course.data[0].get("course_code") or "N/A"
            except GatewayError:
                logger.info(f"과목 정보 조회 실패, 기본값 사용 (exam={exam_id})")
        row.setdefault("course_code", "N/A")

        try:
            return Exam.model_validate(row)
        except ValidationError as e:
            raise GatewayError("fetch_exam", f"시험 데이터 형식 오류: {e}") from e

    async def fetch_questions(self, exam_id: str) -> List[Question]:
        res = await self._call(
            "fetch_questions",
            lambda: self._client.table(QUESTIONS_TABLE)
            .select("*")
            .eq("exam_id", exam_id)
            .order("sequence")
            .execute(),
        )
        questions: List[Question] = []
        for row in res.data or []:
            try:
                questions.append(Question.model_validate(row))
            except ValidationError as e:
                logger.warning(f"문항 스킵 (exam={exam_id}, id={row.get('id')}): {e}")
        return questions

    # ── 제출 기록 ────────────────────────────────────────────────────────────

    async def fetch_submission(self, exam_id: str, student_id: str) -> Optional[ExamSubmission]:
        res = await self._call(
            "fetch_submission",
            lambda: self._client.table(SUBMISSIONS_TABLE)
            .select("*")
            .eq("exam_id", exam_id)
            .eq("student_id", student_id)
            .order("updated_at", desc=True)
            .limit(1)
            .execute(),
        )
        rows = res.data or []
        return ExamSubmission.model_validate(rows[0]) if rows else None

    async def create_submission(
        self,
        exam_id: str,
        student_id: str,
        status: SubmissionStatus,
        started_at: datetime,
    ) -> ExamSubmission:
        payload = to_row({
            "exam_id": exam_id,
            "student_id": student_id,
            "status": status,
            "started_at": started_at,
            "updated_at": started_at,
        })
        res = await self._call(
            "create_submission",
            lambda: self._client.table(SUBMISSIONS_TABLE).insert(payload).execute(),
        )
        if not res.data:
            raise GatewayError("create_submission", "생성된 행이 반환되지 않았습니다.")
        return ExamSubmission.model_validate(res.data[0])

    async def update_submission(
        self, submission_id: str, fields: Dict[str, Any]
    ) -> Optional[ExamSubmission]:
        """
        아직 봉인되지 않은(submitted/graded 아님) 행만 갱신한다.
        일치하는 행이 없으면 None (이미 다른 곳에서 제출된 기록).
        """
        payload = to_row(fields)
        res = await self._call(
            "update_submission",
            lambda: self._client.table(SUBMISSIONS_TABLE)
            .update(payload)
            .eq("id", submission_id)
            .neq("status", _SEALED_STATUSES[0])
            .neq("status", _SEALED_STATUSES[1])
            .execute(),
        )
        rows = res.data or []
        return ExamSubmission.model_validate(rows[0]) if rows else None

    # ── 파일 ─────────────────────────────────────────────────────────────────

    async def upload_file(self, owner_path: str, file: PendingFile) -> str:
        bucket = self._client.storage.from_(self._bucket)
        await self._call(
            "upload_file",
            lambda: bucket.upload(
                path=owner_path,
                file=file.content,
                file_options={"content-type": file.content_type, "upsert": "false"},
            ),
        )
        return await self._call("public_url", lambda: bucket.get_public_url(owner_path))
