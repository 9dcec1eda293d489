"""
services/exam_session.py

시험 응시 세션 컨트롤러 (상태 머신).

단계:
  loading → not_yet_open → ready_to_confirm → active → submitted
  ready_to_confirm / active → expired (마감 경과)
  active → interrupted (제출 없이 나감, 나중에 이어서 응시)
  resumable: 이어서 응시 확인 대기 (REQUIRE_RESUME_CONFIRMATION)

Public API:
  - load(exam_id, student_id)
  - confirm_start()
  - set_answer(question_id | None, value)
  - add_file(...) / remove_file(index)
  - save_progress()
  - submit()
  - exit()
  - close()  (언마운트: 타이머만 해제, 저장 없음)

설계 원칙:
- 모든 전이는 같은 이벤트 루프에서 실행된다 (워커 없음)
- 주기 작업(1초 틱, 30초 자동 저장)은 컨트롤러가 소유하고, active를 벗어나면 반드시 해제
- 제출은 세션당 한 번만 저장소에 도달한다 (동기 검사되는 진행 중 플래그)
- 터미널 단계 이후 끝난 저장 결과는 버린다 (epoch 비교)
- 전이를 막는 오류는 예외가 아닌 OperationResult로 반환
"""

import asyncio
import logging
import re
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import (
    TICK_INTERVAL_SECONDS, AUTO_SAVE_INTERVAL_SECONDS,
    MAX_ANSWER_FILES, MAX_ANSWER_FILE_SIZE, REQUIRE_RESUME_CONFIRMATION,
)
from exam_portal.models.exam_model import Exam, ExamModality
from exam_portal.models.session_state import (
    AnswerBuffer, PendingFile, SessionPhase, SessionSnapshot, TimerState,
)
from exam_portal.models.submission_model import ExamSubmission, SubmissionStatus
from exam_portal.services.clock import ClockSource, SystemClock
from exam_portal.services.errors import (
    ErrorCode, GatewayError, OperationResult, SessionError, session_error,
)
from exam_portal.services.supabase_gateway import PersistenceGateway
from exam_portal.services.timer_service import compute_timer_state, format_remaining

logger = logging.getLogger(__name__)

_MAX_NOTICES = 10
_PRE_ACTIVE = (SessionPhase.NOT_YET_OPEN, SessionPhase.READY_TO_CONFIRM, SessionPhase.RESUMABLE)


# ══════════════════════════════════════════════════════════════════════════════
# 주기 작업 핸들
# ══════════════════════════════════════════════════════════════════════════════

class SessionTimers:
    """
    세션이 소유하는 주기 작업 모음.
    이름별로 하나의 asyncio.Task만 유지하며 cancel_all()로 한 번에 해제한다.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> List[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    def start(self, name: str, interval: float, fn: Callable[[], Awaitable[None]]) -> None:
        task = self._tasks.get(name)
        if task is not None and not task.done():
            return
        self._tasks[name] = asyncio.create_task(self._loop(name, interval, fn))

    def stop(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.stop(name)

    async def _loop(self, name: str, interval: float, fn: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception:
                logger.exception(f"주기 작업 '{name}' 실행 중 오류")


# ══════════════════════════════════════════════════════════════════════════════
# 컨트롤러
# ══════════════════════════════════════════════════════════════════════════════

class ExamSessionController:

    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Optional[ClockSource] = None,
        *,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        autosave_interval: float = AUTO_SAVE_INTERVAL_SECONDS,
        max_files: int = MAX_ANSWER_FILES,
        max_file_size: int = MAX_ANSWER_FILE_SIZE,
        require_resume_confirmation: bool = REQUIRE_RESUME_CONFIRMATION,
        on_change: Optional[Callable[[SessionSnapshot], None]] = None,
    ):
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval
        self._autosave_interval = autosave_interval
        self._max_files = max_files
        self._max_file_size = max_file_size
        self._require_resume_confirmation = require_resume_confirmation
        self._on_change = on_change

        self._timers = SessionTimers()
        self._write_lock = asyncio.Lock()
        self._reset()

    def _reset(self) -> None:
        self._phase = SessionPhase.LOADING
        self._epoch = 0
        self._exam: Optional[Exam] = None
        self._student_id: Optional[str] = None
        self._submission: Optional[ExamSubmission] = None
        self._buffer = AnswerBuffer()
        self._start_in_flight = False
        self._submit_task: Optional[asyncio.Task] = None
        self._auto_submit_fired = False
        self._closed = False
        self._last_saved_at: Optional[datetime] = None
        self._last_autosave_error: Optional[str] = None
        self._error: Optional[SessionError] = None
        self._notices: List[str] = []

    # ── 조회 ────────────────────────────────────────────────────────────────

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def exam(self) -> Optional[Exam]:
        return self._exam

    @property
    def submission(self) -> Optional[ExamSubmission]:
        return self._submission

    @property
    def buffer(self) -> AnswerBuffer:
        return self._buffer

    @property
    def submission_in_flight(self) -> bool:
        return self._submit_task is not None and not self._submit_task.done()

    @property
    def running_timers(self) -> List[str]:
        return self._timers.running

    def timer_state(self) -> Optional[TimerState]:
        if self._exam is None:
            return None
        return compute_timer_state(self._exam, self._clock.now(), self._attempt_started_at())

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            exam_id=self._exam.id if self._exam else None,
            student_id=self._student_id,
            submission_id=self._submission.id if self._submission else None,
            phase=self._phase,
            timer=self.timer_state(),
            answers=dict(self._buffer.answers),
            text=self._buffer.text,
            pending_files=[f.name for f in self._buffer.pending_files],
            uploaded_urls=list(self._buffer.uploaded_urls),
            last_saved_at=self._last_saved_at,
            last_autosave_error=self._last_autosave_error,
            error=self._error,
            notices=list(self._notices),
        )

    # ── 내부 헬퍼 ────────────────────────────────────────────────────────────

    def _attempt_started_at(self) -> Optional[datetime]:
        sub = self._submission
        if sub is None or sub.status == SubmissionStatus.NOT_STARTED:
            return None
        return sub.started_at

    def _result(self, *, noop: bool = False, warnings: Optional[List[SessionError]] = None) -> OperationResult:
        return OperationResult(ok=True, phase=self._phase.value, noop=noop, warnings=warnings or [])

    def _fail(self, code: ErrorCode, message: str, **details: Any) -> OperationResult:
        return OperationResult(
            ok=False,
            phase=self._phase.value,
            error=session_error(code, message, **details),
        )

    def _fail_load(self, code: ErrorCode, message: str, **details: Any) -> OperationResult:
        self._error = session_error(code, message, **details)
        self._transition(SessionPhase.ERROR, message)
        return OperationResult(ok=False, phase=self._phase.value, error=self._error)

    def _notice(self, message: str) -> None:
        self._notices.append(message)
        del self._notices[:-_MAX_NOTICES]

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.snapshot())
        except Exception:
            logger.exception("on_change 콜백 실행 중 오류")

    def _transition(self, phase: SessionPhase, reason: str = "") -> None:
        if phase is not self._phase:
            logger.info(
                f"세션 전이 {self._phase.value} → {phase.value} "
                f"(exam={self._exam.id if self._exam else '-'}, student={self._student_id}) {reason}"
            )
            self._phase = phase
            self._epoch += 1
        self._sync_timers()
        self._notify()

    def _sync_timers(self) -> None:
        if self._closed:
            self._timers.cancel_all()
        elif self._phase is SessionPhase.ACTIVE:
            self._timers.start("tick", self._tick_interval, self.tick)
            self._timers.start("autosave", self._autosave_interval, self.autosave_tick)
        elif self._phase in _PRE_ACTIVE:
            self._timers.start("tick", self._tick_interval, self.tick)
            self._timers.stop("autosave")
        else:
            self._timers.cancel_all()

    def _restore_buffer(self, submission: ExamSubmission) -> None:
        self._buffer = AnswerBuffer(
            answers=dict(submission.answers),
            text=submission.answer_text,
            uploaded_urls=list(submission.answer_files),
        )

    def _guard_active(self) -> Optional[OperationResult]:
        """active 단계에서만 허용되는 작업의 공통 검사."""
        if self._phase is SessionPhase.SUBMITTED:
            return self._fail(ErrorCode.ALREADY_SUBMITTED, "이미 제출된 시험입니다.")
        if self._phase is SessionPhase.EXPIRED:
            return self._fail(ErrorCode.WINDOW_NOT_OPEN, "시험 시간이 종료되었습니다.",
                              closed_at=self._exam.end_time.isoformat() if self._exam else None)
        if self._phase is not SessionPhase.ACTIVE:
            return self._fail(ErrorCode.INVALID_STATE, f"진행 중인 시험이 아닙니다 ({self._phase.value}).")
        if self.submission_in_flight:
            return self._fail(ErrorCode.INVALID_STATE, "제출 처리 중입니다.")
        return None

    # ══════════════════════════════════════════════════════════════════════════
    # load
    # ══════════════════════════════════════════════════════════════════════════

    async def load(self, exam_id: str, student_id: str) -> OperationResult:
        """
        시험과 기존 제출 기록을 읽어 초기 단계를 결정한다.

        - 시험 없음 → error (NOT_FOUND)
        - 이미 제출 → submitted (ALREADY_SUBMITTED)
        - started 기록 + 시간 남음 → 답안 복원 후 active (또는 resumable)
        - started 기록 + 마감 경과 → 저장된 답안으로 강제 제출
        - 시작 전 / 창 안 / 종료 후 → not_yet_open / ready_to_confirm / expired
        """
        if self._phase is SessionPhase.ACTIVE or self.submission_in_flight:
            return self._fail(ErrorCode.INVALID_STATE, "진행 중인 세션은 다시 불러올 수 없습니다.")

        self._timers.cancel_all()
        self._reset()
        self._student_id = student_id

        try:
            exam = await self._gateway.fetch_exam(exam_id)
        except GatewayError as e:
            return self._fail_load(ErrorCode.LOAD_ERROR, f"시험 정보를 불러오지 못했습니다: {e}")
        if exam is None:
            return self._fail_load(ErrorCode.NOT_FOUND, "시험을 찾을 수 없습니다.", exam_id=exam_id)
        if not exam.is_online:
            return self._fail_load(
                ErrorCode.UNSUPPORTED_MODALITY,
                "오프라인(physical) 시험입니다. 지정된 고사장에서 응시하세요.",
                exam_type=exam.exam_type.value,
            )

        if exam.exam_type == ExamModality.ONLINE:
            try:
                questions = await self._gateway.fetch_questions(exam_id)
                exam = exam.model_copy(update={"questions": questions})
            except GatewayError as e:
                # 문항이 없으면 서술형 답안 모드로 진행
                logger.warning(f"문항 조회 실패, 문항 없이 진행 (exam={exam_id}): {e}")
        self._exam = exam

        try:
            submission = await self._gateway.fetch_submission(exam_id, student_id)
        except GatewayError as e:
            return self._fail_load(ErrorCode.LOAD_ERROR, f"제출 기록을 불러오지 못했습니다: {e}")
        self._submission = submission

        if submission is not None and submission.is_sealed:
            self._transition(SessionPhase.SUBMITTED, "기존 제출 기록")
            return self._fail(ErrorCode.ALREADY_SUBMITTED, "이미 제출된 시험입니다.")

        now = self._clock.now()

        if submission is not None and submission.is_in_progress:
            self._restore_buffer(submission)
            timer = compute_timer_state(exam, now, self._attempt_started_at())
            if timer.is_time_up:
                self._transition(SessionPhase.ACTIVE, "마감 경과한 미제출 기록 → 강제 제출")
                self._auto_submit_fired = True
                return await self._submit(auto=True)
            if self._require_resume_confirmation:
                self._transition(SessionPhase.RESUMABLE, f"남은 시간 {format_remaining(timer.time_remaining)}")
            else:
                self._transition(SessionPhase.ACTIVE, "이어서 응시")
            return self._result()

        if now < exam.start_time:
            self._transition(SessionPhase.NOT_YET_OPEN)
        elif now >= exam.end_time:
            self._transition(SessionPhase.EXPIRED)
        else:
            self._transition(SessionPhase.READY_TO_CONFIRM)
        return self._result()

    # ══════════════════════════════════════════════════════════════════════════
    # confirm_start
    # ══════════════════════════════════════════════════════════════════════════

    async def confirm_start(self) -> OperationResult:
        """
        응시 시작 확인. ready_to_confirm(또는 resumable)에서만 유효.
        제출 기록 저장에 실패하면 전이하지 않는다.
        """
        if self._phase is SessionPhase.RESUMABLE:
            timer = self.timer_state()
            if timer is not None and timer.is_time_up:
                self._transition(SessionPhase.ACTIVE, "이어서 응시 확인 시점에 마감 경과")
                self._auto_submit_fired = True
                return await self._submit(auto=True)
            self._transition(SessionPhase.ACTIVE, "이어서 응시 확인")
            return self._result()

        if self._phase is SessionPhase.SUBMITTED:
            return self._fail(ErrorCode.ALREADY_SUBMITTED, "이미 제출된 시험입니다.")
        if self._phase in (SessionPhase.NOT_YET_OPEN, SessionPhase.EXPIRED):
            return self._window_error()
        if self._phase is not SessionPhase.READY_TO_CONFIRM:
            return self._fail(ErrorCode.INVALID_STATE, f"시험을 시작할 수 없는 상태입니다 ({self._phase.value}).")
        if self._start_in_flight:
            return self._fail(ErrorCode.INVALID_STATE, "시작 처리 중입니다.")

        exam = self._exam
        now = self._clock.now()
        if now < exam.start_time:
            return self._window_error()
        if now >= exam.end_time:
            self._transition(SessionPhase.EXPIRED, "시작 확인 시점에 마감 경과")
            return self._window_error()

        epoch = self._epoch
        self._start_in_flight = True
        try:
            submission = await self._open_submission(now)
        except GatewayError as e:
            logger.error(f"응시 시작 기록 실패 (exam={exam.id}, student={self._student_id}): {e}")
            return self._fail(ErrorCode.PERSISTENCE_FAILURE, "시험을 시작하지 못했습니다. 다시 시도해 주세요.",
                              cause=str(e))
        finally:
            self._start_in_flight = False

        if self._epoch != epoch or self._closed:
            return self._fail(ErrorCode.INVALID_STATE, "시작 처리 중 세션 상태가 바뀌었습니다.")

        self._submission = submission
        if submission.is_sealed:
            self._transition(SessionPhase.SUBMITTED, "다른 세션에서 이미 제출")
            return self._fail(ErrorCode.ALREADY_SUBMITTED, "이미 제출된 시험입니다.")

        self._transition(SessionPhase.ACTIVE, "응시 시작")
        return self._result()

    async def _open_submission(self, now: datetime) -> ExamSubmission:
        """started 기록을 만들거나 기존 기록을 재사용한다 (중복 생성 방지)."""
        exam_id, student_id = self._exam.id, self._student_id

        existing = await self._gateway.fetch_submission(exam_id, student_id)
        if existing is not None and existing.is_sealed:
            return existing
        if existing is not None and existing.is_in_progress:
            self._restore_buffer(existing)
            return existing

        if existing is not None:
            updated = await self._gateway.update_submission(existing.id, {
                "status": SubmissionStatus.STARTED,
                "started_at": now,
                "updated_at": now,
            })
            if updated is not None:
                return updated
            # 갱신 대상이 없으면 그 사이 제출된 것
            sealed = await self._gateway.fetch_submission(exam_id, student_id)
            if sealed is None:
                raise GatewayError("open_submission", "제출 기록이 사라졌습니다.")
            return sealed

        return await self._gateway.create_submission(exam_id, student_id, SubmissionStatus.STARTED, now)

    def _window_error(self) -> OperationResult:
        exam = self._exam
        now = self._clock.now()
        if exam is not None and now < exam.start_time:
            return self._fail(ErrorCode.WINDOW_NOT_OPEN, "아직 시험 시작 전입니다.",
                              opens_at=exam.start_time.isoformat())
        return self._fail(ErrorCode.WINDOW_NOT_OPEN, "시험 시간이 종료되었습니다.",
                          closed_at=exam.end_time.isoformat() if exam else None)

    # ══════════════════════════════════════════════════════════════════════════
    # 답안 버퍼
    # ══════════════════════════════════════════════════════════════════════════

    def set_answer(self, question_id: Optional[str], value: Any) -> OperationResult:
        """메모리 버퍼만 갱신. 저장은 자동 저장/수동 저장/제출에서."""
        blocked = self._guard_active()
        if blocked:
            return blocked
        if self.timer_state().is_time_up:
            return self._window_error()

        if question_id is not None:
            question_id = str(question_id)
            known = {q.id for q in self._exam.questions}
            if known and question_id not in known:
                return self._fail(ErrorCode.UNKNOWN_QUESTION, "존재하지 않는 문항입니다.", question_id=question_id)

        self._buffer.set(question_id, value)
        self._notify()
        return self._result()

    def add_file(self, name: str, content: bytes, content_type: str = "application/octet-stream") -> OperationResult:
        blocked = self._guard_active()
        if blocked:
            return blocked

        attached = len(self._buffer.pending_files) + len(self._buffer.uploaded_urls)
        if attached >= self._max_files:
            return self._fail(ErrorCode.FILE_LIMIT_EXCEEDED,
                              f"첨부 파일은 최대 {self._max_files}개까지 가능합니다.", limit=self._max_files)
        if len(content) > self._max_file_size:
            return self._fail(ErrorCode.FILE_LIMIT_EXCEEDED,
                              f"파일이 너무 큽니다 (최대 {self._max_file_size // (1024 * 1024)}MB).",
                              max_size=self._max_file_size)

        self._buffer.pending_files.append(
            PendingFile(name=name, content=content, content_type=content_type or "application/octet-stream")
        )
        self._notify()
        return self._result()

    def remove_file(self, index: int) -> OperationResult:
        blocked = self._guard_active()
        if blocked:
            return blocked
        if not (0 <= index < len(self._buffer.pending_files)):
            return self._fail(ErrorCode.INVALID_STATE, "첨부 파일을 찾을 수 없습니다.", index=index)
        self._buffer.pending_files.pop(index)
        self._notify()
        return self._result()

    # ══════════════════════════════════════════════════════════════════════════
    # 저장
    # ══════════════════════════════════════════════════════════════════════════

    async def _persist_buffer(self) -> Optional[SessionError]:
        """
        현재 버퍼를 제출 기록에 저장. 오류가 없으면 None.
        저장 도중 세션이 다른 단계로 넘어갔으면 결과를 버린다.
        """
        epoch = self._epoch
        now = self._clock.now()
        fields = {
            "answers": dict(self._buffer.answers),
            "answer_text": self._buffer.text,
            "updated_at": now,
        }

        async with self._write_lock:
            if self._epoch != epoch or self._phase is not SessionPhase.ACTIVE:
                return None
            try:
                updated = await self._gateway.update_submission(self._submission.id, fields)
            except GatewayError as e:
                return session_error(ErrorCode.PERSISTENCE_FAILURE, "답안을 저장하지 못했습니다.", cause=str(e))

        if self._epoch != epoch:
            logger.info("단계가 바뀐 뒤 끝난 저장 결과 무시")
            return None
        if updated is None:
            await self._sealed_elsewhere()
            return session_error(ErrorCode.ALREADY_SUBMITTED, "다른 세션에서 이미 제출된 시험입니다.")

        self._submission = updated
        self._last_saved_at = now
        return None

    async def _sealed_elsewhere(self) -> None:
        """다른 세션(탭/기기)에서 기록이 확정된 것을 발견했을 때."""
        try:
            latest = await self._gateway.fetch_submission(self._exam.id, self._student_id)
            if latest is not None:
                self._submission = latest
        except GatewayError as e:
            logger.warning(f"확정된 제출 기록 재조회 실패: {e}")
        self._notice("다른 세션에서 이미 제출된 시험입니다.")
        self._transition(SessionPhase.SUBMITTED, "다른 세션에서 제출됨")

    async def save_progress(self) -> OperationResult:
        """수동 저장. 실패하면 사용자에게 알린다 (재시도는 사용자 몫)."""
        blocked = self._guard_active()
        if blocked:
            return blocked

        error = await self._persist_buffer()
        if error is not None:
            if error.code is ErrorCode.PERSISTENCE_FAILURE:
                logger.error(f"수동 저장 실패 (submission={self._submission.id}): {error.details.get('cause')}")
            return OperationResult(ok=False, phase=self._phase.value, error=error)

        self._last_autosave_error = None
        self._notify()
        return self._result()

    async def autosave_tick(self) -> None:
        """30초 주기 자동 저장. 실패는 기록만 하고 다음 주기에 재시도."""
        if self._phase is not SessionPhase.ACTIVE or self.submission_in_flight:
            return

        error = await self._persist_buffer()
        if error is None:
            self._last_autosave_error = None
        elif error.code is ErrorCode.PERSISTENCE_FAILURE:
            self._last_autosave_error = error.message
            self._notice("자동 저장에 실패했습니다. 다음 주기에 다시 시도합니다.")
            logger.warning(f"자동 저장 실패 (submission={self._submission.id}): {error.details.get('cause')}")
        self._notify()

    # ══════════════════════════════════════════════════════════════════════════
    # 타이머 틱
    # ══════════════════════════════════════════════════════════════════════════

    async def tick(self) -> None:
        """
        1초 주기. 시각 차로 타이머를 다시 계산하고 필요한 전이를 일으킨다.
        active에서 마감이 되면 자동 제출을 정확히 한 번 시도한다.
        """
        if self._exam is None:
            return
        timer = self.timer_state()

        if self._phase is SessionPhase.NOT_YET_OPEN and timer.is_started:
            if timer.is_ended:
                self._transition(SessionPhase.EXPIRED, "대기 중 시험 종료")
            else:
                self._transition(SessionPhase.READY_TO_CONFIRM, "시험 시작 시각 도달")
            return

        if self._phase is SessionPhase.READY_TO_CONFIRM and timer.is_ended:
            self._transition(SessionPhase.EXPIRED, "시작 확인 전 시험 종료")
            return

        if self._phase is SessionPhase.RESUMABLE and timer.is_time_up:
            self._transition(SessionPhase.ACTIVE, "이어서 응시 대기 중 마감 경과")

        if (
            self._phase is SessionPhase.ACTIVE
            and timer.is_time_up
            and not self._auto_submit_fired
            and not self.submission_in_flight
        ):
            self._auto_submit_fired = True
            logger.info(f"시험 시간 종료 → 자동 제출 (exam={self._exam.id}, student={self._student_id})")
            self._notice("시험 시간이 종료되어 자동으로 제출합니다.")
            result = await self._submit(auto=True)
            if not result.ok:
                self._error = result.error
                self._notice("자동 제출에 실패했습니다. 제출 버튼을 눌러 다시 제출해 주세요.")
                self._notify()
            return

        self._notify()

    # ══════════════════════════════════════════════════════════════════════════
    # 제출
    # ══════════════════════════════════════════════════════════════════════════

    async def submit(self) -> OperationResult:
        """사용자 제출. 자동 제출과 동시에 와도 저장소 쓰기는 한 번뿐."""
        return await self._submit(auto=False)

    async def _submit(self, auto: bool) -> OperationResult:
        if self._phase is SessionPhase.SUBMITTED:
            return self._result(noop=True)

        # 진행 중 제출이 있으면 그 결과를 그대로 관찰
        if self._submit_task is not None:
            result = await asyncio.shield(self._submit_task)
            return result.model_copy(update={"noop": True})

        blocked = self._guard_active()
        if blocked:
            return blocked

        # await 이전에 플래그를 세워야 경쟁하는 호출이 이를 본다
        self._submit_task = asyncio.ensure_future(self._finalize(auto))
        return await asyncio.shield(self._submit_task)

    async def _finalize(self, auto: bool) -> OperationResult:
        exam, submission = self._exam, self._submission
        self._timers.cancel_all()
        logger.info(
            f"{'자동' if auto else '사용자'} 제출 시작 (exam={exam.id}, student={self._student_id}, "
            f"answers={self._buffer.answered_count}, files={len(self._buffer.pending_files)})"
        )

        warnings: List[SessionError] = []
        async with self._write_lock:
            failed = await self._upload_pending()
            if failed:
                warnings.append(session_error(
                    ErrorCode.UPLOAD_PARTIAL_FAILURE,
                    f"첨부 파일 {len(failed)}개 업로드에 실패했습니다.",
                    failed=failed,
                ))

            now = self._clock.now()
            # 자동 저장과 같은 답안 필드를 모두 기록
            fields: Dict[str, Any] = {
                "status": SubmissionStatus.SUBMITTED,
                "submitted_at": now,
                "updated_at": now,
                "answers": dict(self._buffer.answers),
                "answer_text": self._buffer.text,
            }
            if self._buffer.uploaded_urls:
                fields["answer_files"] = list(self._buffer.uploaded_urls)

            try:
                updated = await self._gateway.update_submission(submission.id, fields)
            except GatewayError as e:
                logger.error(f"제출 실패 (submission={submission.id}): {e}")
                self._submit_task = None
                self._sync_timers()
                self._notify()
                result = self._fail(
                    ErrorCode.PERSISTENCE_FAILURE,
                    "시험을 제출하지 못했습니다. 다시 시도해 주세요.",
                    cause=str(e),
                )
                result.warnings = warnings
                return result

        if self._closed:
            logger.info(f"세션 종료 후 제출 완료 (submission={submission.id})")
            return self._result(warnings=warnings)

        if updated is None:
            await self._sealed_elsewhere()
            return self._result(noop=True)

        self._submission = updated
        self._error = None
        self._buffer.pending_files = []
        for warning in warnings:
            logger.warning(f"제출 완료, 일부 첨부 실패: {warning.details.get('failed')}")
            self._notice(warning.message)
        self._transition(SessionPhase.SUBMITTED, "자동 제출" if auto else "사용자 제출")
        return self._result(warnings=warnings)

    async def _upload_pending(self) -> List[str]:
        """대기 중 첨부 파일을 업로드하고 실패한 파일 이름 목록을 반환한다."""
        exam_id, student_id = self._exam.id, self._student_id
        failed: List[str] = []
        remaining: List[PendingFile] = []

        for f in self._buffer.pending_files:
            path = _answer_file_path(student_id, exam_id, f.name, self._clock.now())
            try:
                url = await self._gateway.upload_file(path, f)
            except GatewayError as e:
                logger.warning(f"첨부 업로드 실패 ({f.name}): {e}")
                failed.append(f.name)
                remaining.append(f)
                continue
            self._buffer.uploaded_urls.append(url)

        self._buffer.pending_files = remaining
        return failed

    # ══════════════════════════════════════════════════════════════════════════
    # 종료
    # ══════════════════════════════════════════════════════════════════════════

    async def exit(self) -> OperationResult:
        """
        제출하지 않고 나가기. 가능한 만큼 저장한 뒤 타이머를 해제한다.
        기록은 started로 남으므로 다음 load에서 이어서 응시할 수 있다.
        """
        if self.submission_in_flight:
            return self._fail(ErrorCode.INVALID_STATE, "제출 처리 중입니다.")
        if self._phase.is_terminal:
            self._timers.cancel_all()
            return self._result(noop=True)

        warnings: List[SessionError] = []
        if self._phase is SessionPhase.ACTIVE:
            error = await self._persist_buffer()
            if error is not None:
                logger.warning(f"나가기 전 저장 실패: {error.message}")
                warnings.append(error)
            if self._phase is not SessionPhase.ACTIVE:
                return self._result(warnings=warnings)

        self._transition(SessionPhase.INTERRUPTED, "사용자 나가기")
        return self._result(warnings=warnings)

    def close(self) -> None:
        """언마운트. 주기 작업을 모두 해제한다 (저장하지 않음)."""
        if self._closed:
            return
        self._closed = True
        self._timers.cancel_all()
        if not self._phase.is_terminal and self._phase is not SessionPhase.INTERRUPTED:
            self._phase = SessionPhase.INTERRUPTED
            self._epoch += 1
        logger.info(f"세션 해제 (exam={self._exam.id if self._exam else '-'}, student={self._student_id})")

    async def __aenter__(self) -> "ExamSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


def _answer_file_path(student_id: str, exam_id: str, filename: str, now: datetime) -> str:
    """저장소 경로: <student_id>/<exam_id>/<epoch-ms>_<random>_<safe name>"""
    safe_name = re.sub(r"[^a-zA-Z0-9.]", "_", filename)
    stamp = int(now.timestamp() * 1000)
    return f"{student_id}/{exam_id}/{stamp}_{uuid.uuid4().hex[:6]}_{safe_name}"
