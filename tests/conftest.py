import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from exam_portal.models.exam_model import Exam, Question
from exam_portal.models.session_state import PendingFile
from exam_portal.models.submission_model import ExamSubmission
from exam_portal.services.errors import GatewayError
from exam_portal.services.exam_session import ExamSessionController

# 시험 시간: T ~ T+60분
T = datetime(2025, 5, 12, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeGateway:
    """인메모리 PersistenceGateway. fail에 작업 이름을 넣으면 GatewayError를 던진다."""

    def __init__(self):
        self.exams: Dict[str, Exam] = {}
        self.questions: Dict[str, List[Question]] = {}
        self.submissions: Dict[str, ExamSubmission] = {}
        self.uploads: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self.fail: set = set()
        self.fail_uploads: set = set()
        self._seq = 0

    def _enter(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if op in self.fail:
            raise GatewayError(op, "injected failure")

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    def updates(self) -> List[Dict[str, Any]]:
        return [c[2] for c in self.calls if c[0] == "update_submission"]

    def add_exam(self, exam: Exam, questions: Optional[List[Question]] = None) -> Exam:
        self.exams[exam.id] = exam
        if questions is not None:
            self.questions[exam.id] = questions
        return exam

    def add_submission(self, **fields) -> ExamSubmission:
        self._seq += 1
        fields.setdefault("id", f"sub-{self._seq}")
        sub = ExamSubmission.model_validate(fields)
        self.submissions[sub.id] = sub
        return sub

    def only_submission(self) -> ExamSubmission:
        assert len(self.submissions) == 1
        return next(iter(self.submissions.values()))

    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        self._enter("fetch_exam", exam_id)
        return self.exams.get(exam_id)

    async def fetch_questions(self, exam_id: str) -> List[Question]:
        self._enter("fetch_questions", exam_id)
        return list(self.questions.get(exam_id, []))

    async def fetch_submission(self, exam_id: str, student_id: str) -> Optional[ExamSubmission]:
        self._enter("fetch_submission", exam_id, student_id)
        for sub in self.submissions.values():
            if sub.exam_id == exam_id and sub.student_id == student_id:
                return sub.model_copy(deep=True)
        return None

    async def create_submission(self, exam_id, student_id, status, started_at) -> ExamSubmission:
        self._enter("create_submission", exam_id, student_id)
        sub = self.add_submission(
            exam_id=exam_id, student_id=student_id, status=status,
            started_at=started_at, updated_at=started_at,
        )
        return sub.model_copy(deep=True)

    async def update_submission(self, submission_id: str, fields: Dict[str, Any]) -> Optional[ExamSubmission]:
        self._enter("update_submission", submission_id, dict(fields))
        sub = self.submissions.get(submission_id)
        if sub is None or sub.is_sealed:
            return None
        updated = ExamSubmission.model_validate({**sub.model_dump(), **fields})
        self.submissions[submission_id] = updated
        return updated.model_copy(deep=True)

    async def upload_file(self, owner_path: str, file: PendingFile) -> str:
        self._enter("upload_file", owner_path)
        if file.name in self.fail_uploads:
            raise GatewayError("upload_file", f"{file.name} rejected")
        self.uploads[owner_path] = file.content
        return f"https://files.test/{owner_path}"


def make_exam(**overrides) -> Exam:
    fields = {
        "id": "exam-1",
        "title": "CS101 Final",
        "course_code": "CS101",
        "exam_type": "written_online",
        "start_time": T,
        "end_time": T + timedelta(minutes=60),
        "duration_minutes": 60,
        "total_marks": 100,
    }
    fields.update(overrides)
    return Exam.model_validate(fields)


def make_questions(exam_id: str = "exam-1") -> List[Question]:
    return [
        Question(id="q1", exam_id=exam_id, question_text="2 + 2 = ?", marks=5, sequence=1,
                 options=["3", "4", "5"]),
        Question(id="q2", exam_id=exam_id, question_text="Explain recursion.", marks=10, sequence=2),
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T + timedelta(minutes=1))


@pytest.fixture
def gateway() -> FakeGateway:
    g = FakeGateway()
    g.add_exam(make_exam())
    g.add_exam(make_exam(id="exam-mcq", exam_type="online"), make_questions("exam-mcq"))
    return g


@pytest.fixture
async def make_controller(gateway, clock):
    """주기 작업이 테스트 중 스스로 돌지 않도록 긴 주기로 생성한다."""
    created: List[ExamSessionController] = []

    def factory(**kwargs) -> ExamSessionController:
        kwargs.setdefault("tick_interval", 3600)
        kwargs.setdefault("autosave_interval", 3600)
        controller = ExamSessionController(gateway, clock, **kwargs)
        created.append(controller)
        return controller

    yield factory

    for controller in created:
        controller.close()
    await asyncio.sleep(0)
