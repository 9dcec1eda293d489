import asyncio
from datetime import timedelta

from conftest import T, make_exam
from exam_portal.models.session_state import SessionPhase
from exam_portal.models.submission_model import SubmissionStatus
from exam_portal.services.errors import ErrorCode

STUDENT = "student-1"


async def _active(make_controller, exam_id="exam-1", **kwargs):
    controller = make_controller(**kwargs)
    await controller.load(exam_id, STUDENT)
    result = await controller.confirm_start()
    assert result.ok
    return controller


# ── load / 시작 확인 ─────────────────────────────────────────────────────────

async def test_load_before_window_is_not_yet_open(make_controller, clock):
    clock.set(T - timedelta(minutes=10))
    c = make_controller()

    result = await c.load("exam-1", STUDENT)
    assert result.ok
    assert c.phase is SessionPhase.NOT_YET_OPEN
    assert c.running_timers == ["tick"]

    result = await c.confirm_start()
    assert not result.ok
    assert result.error.code is ErrorCode.WINDOW_NOT_OPEN
    assert "opens_at" in result.error.details
    assert c.phase is SessionPhase.NOT_YET_OPEN


async def test_tick_opens_window_when_start_time_arrives(make_controller, clock):
    clock.set(T - timedelta(seconds=5))
    c = make_controller()
    await c.load("exam-1", STUDENT)

    clock.advance(seconds=10)
    await c.tick()
    assert c.phase is SessionPhase.READY_TO_CONFIRM


async def test_late_arrival_is_expired_and_cannot_start(make_controller, clock, gateway):
    clock.set(T + timedelta(minutes=61))
    c = make_controller()

    await c.load("exam-1", STUDENT)
    assert c.phase is SessionPhase.EXPIRED
    assert c.running_timers == []

    result = await c.confirm_start()
    assert result.error.code is ErrorCode.WINDOW_NOT_OPEN
    assert gateway.count("create_submission") == 0


async def test_ready_to_confirm_expires_when_window_closes(make_controller, clock):
    c = make_controller()
    await c.load("exam-1", STUDENT)
    assert c.phase is SessionPhase.READY_TO_CONFIRM

    clock.set(T + timedelta(minutes=60))
    await c.tick()
    assert c.phase is SessionPhase.EXPIRED
    assert c.running_timers == []


async def test_fresh_start_creates_started_record(make_controller, clock, gateway):
    c = make_controller()
    await c.load("exam-1", STUDENT)

    result = await c.confirm_start()
    assert result.ok
    assert c.phase is SessionPhase.ACTIVE
    assert c.running_timers == ["autosave", "tick"]

    sub = gateway.only_submission()
    assert sub.status is SubmissionStatus.STARTED
    assert sub.started_at == clock.now()

    timer = c.timer_state()
    assert timer.time_remaining == 59 * 60
    assert timer.time_elapsed == 60


async def test_start_reuses_record_created_in_another_tab(make_controller, gateway):
    c = make_controller()
    await c.load("exam-1", STUDENT)
    gateway.add_submission(exam_id="exam-1", student_id=STUDENT, status="started",
                           started_at=T, answer_text="draft")

    result = await c.confirm_start()
    assert result.ok
    assert gateway.count("create_submission") == 0
    assert c.buffer.text == "draft"


async def test_start_persistence_failure_keeps_phase(make_controller, gateway):
    gateway.fail.add("create_submission")
    c = make_controller()
    await c.load("exam-1", STUDENT)

    result = await c.confirm_start()
    assert not result.ok
    assert result.error.code is ErrorCode.PERSISTENCE_FAILURE
    assert c.phase is SessionPhase.READY_TO_CONFIRM
    assert c.running_timers == ["tick"]

    gateway.fail.clear()
    assert (await c.confirm_start()).ok


async def test_load_missing_exam(make_controller):
    c = make_controller()
    result = await c.load("nope", STUDENT)
    assert result.error.code is ErrorCode.NOT_FOUND
    assert c.phase is SessionPhase.ERROR


async def test_load_physical_exam_is_rejected(make_controller, gateway):
    gateway.add_exam(make_exam(id="exam-hall", exam_type="physical"))
    c = make_controller()
    result = await c.load("exam-hall", STUDENT)
    assert result.error.code is ErrorCode.UNSUPPORTED_MODALITY
    assert c.phase is SessionPhase.ERROR


async def test_load_store_failure(make_controller, gateway):
    gateway.fail.add("fetch_exam")
    c = make_controller()
    result = await c.load("exam-1", STUDENT)
    assert result.error.code is ErrorCode.LOAD_ERROR
    assert c.snapshot().error.code is ErrorCode.LOAD_ERROR


async def test_load_continues_without_questions(make_controller, gateway):
    gateway.fail.add("fetch_questions")
    c = make_controller()
    result = await c.load("exam-mcq", STUDENT)
    assert result.ok
    assert c.exam.questions == []
    assert c.phase is SessionPhase.READY_TO_CONFIRM


async def test_load_sealed_record_is_submitted(make_controller, gateway):
    gateway.add_submission(exam_id="exam-1", student_id=STUDENT, status="graded")
    c = make_controller()

    result = await c.load("exam-1", STUDENT)
    assert not result.ok
    assert result.error.code is ErrorCode.ALREADY_SUBMITTED
    assert c.phase is SessionPhase.SUBMITTED

    assert c.set_answer(None, "late").error.code is ErrorCode.ALREADY_SUBMITTED
    assert (await c.submit()).noop
    assert gateway.count("update_submission") == 0


# ── 답안 / 저장 / 이어서 응시 ────────────────────────────────────────────────

async def test_answer_save_and_reload(make_controller, clock, gateway):
    c = await _active(make_controller, "exam-mcq")
    assert c.set_answer("q1", "A").ok
    assert (await c.save_progress()).ok
    assert c.snapshot().last_saved_at == clock.now()
    await c.exit()

    clock.advance(minutes=5)
    c2 = make_controller()
    result = await c2.load("exam-mcq", STUDENT)
    assert result.ok
    assert c2.phase is SessionPhase.ACTIVE
    assert c2.buffer.answers == {"q1": "A"}


async def test_unknown_question_is_rejected(make_controller):
    c = await _active(make_controller, "exam-mcq")
    result = c.set_answer("q9", "x")
    assert result.error.code is ErrorCode.UNKNOWN_QUESTION
    assert c.buffer.answers == {}


async def test_empty_answer_clears_entry(make_controller):
    c = await _active(make_controller, "exam-mcq")
    c.set_answer("q1", "A")
    c.set_answer("q1", "")
    assert c.buffer.answers == {}


async def test_resume_goes_straight_to_active(make_controller, clock, gateway):
    gateway.add_submission(exam_id="exam-mcq", student_id=STUDENT, status="started",
                           started_at=T + timedelta(minutes=1), answers='{"q1": "A"}')
    clock.set(T + timedelta(minutes=40))
    c = make_controller()

    result = await c.load("exam-mcq", STUDENT)
    assert result.ok
    assert c.phase is SessionPhase.ACTIVE
    assert c.buffer.answers == {"q1": "A"}
    assert c.timer_state().time_remaining == 20 * 60
    assert gateway.count("create_submission") == 0


async def test_resume_with_confirmation(make_controller, clock, gateway):
    gateway.add_submission(exam_id="exam-1", student_id=STUDENT, status="started",
                           started_at=T)
    clock.set(T + timedelta(minutes=30))
    c = make_controller(require_resume_confirmation=True)

    await c.load("exam-1", STUDENT)
    assert c.phase is SessionPhase.RESUMABLE
    assert c.running_timers == ["tick"]

    assert (await c.confirm_start()).ok
    assert c.phase is SessionPhase.ACTIVE


async def test_load_past_deadline_forces_submit(make_controller, clock, gateway):
    sub = gateway.add_submission(exam_id="exam-1", student_id=STUDENT, status="started",
                                 started_at=T + timedelta(minutes=1), answer_text="saved essay")
    clock.set(T + timedelta(minutes=70))
    c = make_controller()

    result = await c.load("exam-1", STUDENT)
    assert result.ok
    assert c.phase is SessionPhase.SUBMITTED
    stored = gateway.submissions[sub.id]
    assert stored.status is SubmissionStatus.SUBMITTED
    assert stored.answer_text == "saved essay"


async def test_attempt_deadline_is_capped_by_duration(make_controller, clock, gateway):
    gateway.add_exam(make_exam(id="exam-short", duration_minutes=30))
    c = await _active(make_controller, "exam-short")
    assert c.timer_state().deadline == clock.now() + timedelta(minutes=30)


# ── 자동 저장 ────────────────────────────────────────────────────────────────

async def test_autosave_failure_is_not_blocking(make_controller, gateway):
    c = await _active(make_controller)
    c.set_answer(None, "first draft")

    gateway.fail.add("update_submission")
    await c.autosave_tick()
    snap = c.snapshot()
    assert c.phase is SessionPhase.ACTIVE
    assert snap.last_autosave_error
    assert snap.notices
    assert c.set_answer(None, "second draft").ok

    gateway.fail.clear()
    await c.autosave_tick()
    assert c.snapshot().last_autosave_error is None
    assert gateway.only_submission().answer_text == "second draft"


async def test_manual_save_failure_is_reported(make_controller, gateway):
    c = await _active(make_controller)
    gateway.fail.add("update_submission")
    result = await c.save_progress()
    assert result.error.code is ErrorCode.PERSISTENCE_FAILURE
    assert c.phase is SessionPhase.ACTIVE


async def test_save_detects_record_sealed_elsewhere(make_controller, gateway):
    c = await _active(make_controller)
    sub = gateway.only_submission()
    gateway.submissions[sub.id] = sub.model_copy(update={"status": SubmissionStatus.SUBMITTED})

    result = await c.save_progress()
    assert result.error.code is ErrorCode.ALREADY_SUBMITTED
    assert c.phase is SessionPhase.SUBMITTED
    assert c.running_timers == []


async def test_save_finishing_after_close_is_discarded(make_controller, gateway):
    c = await _active(make_controller)
    release = asyncio.Event()
    real_update = gateway.update_submission

    async def slow_update(submission_id, fields):
        await release.wait()
        return await real_update(submission_id, fields)

    gateway.update_submission = slow_update
    save = asyncio.ensure_future(c.save_progress())
    await asyncio.sleep(0)

    c.close()
    release.set()
    await save

    assert c.phase is SessionPhase.INTERRUPTED
    assert c.snapshot().last_saved_at is None


# ── 제출 ─────────────────────────────────────────────────────────────────────

async def test_double_submit_writes_once(make_controller, gateway):
    c = await _active(make_controller)
    c.set_answer(None, "final answer")

    first, second = await asyncio.gather(c.submit(), c.submit())
    third = await c.submit()

    assert first.ok and not first.noop
    assert second.ok and second.noop
    assert third.noop
    submits = [f for f in gateway.updates() if f.get("status") is SubmissionStatus.SUBMITTED]
    assert len(submits) == 1
    assert gateway.only_submission().answer_text == "final answer"
    assert c.phase is SessionPhase.SUBMITTED
    assert c.running_timers == []


async def test_structured_exam_submits_answer_map(make_controller, gateway):
    c = await _active(make_controller, "exam-mcq")
    c.set_answer("q1", "4")
    await c.submit()

    fields = gateway.updates()[-1]
    assert fields["answers"] == {"q1": "4"}
    assert fields["answer_text"] == ""


async def test_written_exam_submit_keeps_keyed_answers(make_controller, gateway):
    c = await _active(make_controller)
    c.set_answer(None, "essay body")
    assert c.set_answer("q1", "A").ok

    assert (await c.submit()).ok

    stored = gateway.only_submission()
    assert stored.status is SubmissionStatus.SUBMITTED
    assert stored.answers == {"q1": "A"}
    assert stored.answer_text == "essay body"


async def test_auto_submit_fires_once_at_deadline(make_controller, clock, gateway):
    c = await _active(make_controller)
    c.set_answer(None, "essay")

    clock.set(T + timedelta(minutes=60))
    await c.tick()
    await c.tick()

    assert c.phase is SessionPhase.SUBMITTED
    assert gateway.only_submission().status is SubmissionStatus.SUBMITTED
    assert gateway.count("update_submission") == 1
    assert (await c.submit()).noop
    assert c.set_answer(None, "more").error.code is ErrorCode.ALREADY_SUBMITTED


async def test_failed_auto_submit_is_surfaced(make_controller, clock, gateway):
    c = await _active(make_controller)
    gateway.fail.add("update_submission")

    clock.set(T + timedelta(minutes=60))
    await c.tick()

    snap = c.snapshot()
    assert c.phase is SessionPhase.ACTIVE
    assert snap.error.code is ErrorCode.PERSISTENCE_FAILURE
    assert any("다시 제출" in n for n in snap.notices)
    assert gateway.only_submission().status is SubmissionStatus.STARTED

    gateway.fail.clear()
    result = await c.submit()
    assert result.ok
    assert c.phase is SessionPhase.SUBMITTED
    assert c.snapshot().error is None


async def test_submit_failure_can_be_retried(make_controller, gateway):
    c = await _active(make_controller)
    gateway.fail.add("update_submission")

    result = await c.submit()
    assert result.error.code is ErrorCode.PERSISTENCE_FAILURE
    assert c.phase is SessionPhase.ACTIVE
    assert c.running_timers == ["autosave", "tick"]

    gateway.fail.clear()
    result = await c.submit()
    assert result.ok and not result.noop
    assert c.phase is SessionPhase.SUBMITTED


# ── 첨부 파일 ────────────────────────────────────────────────────────────────

async def test_file_cap(make_controller):
    c = await _active(make_controller)
    for i in range(5):
        assert c.add_file(f"page{i}.jpg", b"x").ok

    result = c.add_file("page5.jpg", b"x")
    assert result.error.code is ErrorCode.FILE_LIMIT_EXCEEDED
    assert len(c.buffer.pending_files) == 5

    assert c.remove_file(0).ok
    assert c.remove_file(10).error.code is ErrorCode.INVALID_STATE


async def test_file_size_limit(make_controller):
    c = await _active(make_controller, max_file_size=10)
    assert c.add_file("big.pdf", b"x" * 11).error.code is ErrorCode.FILE_LIMIT_EXCEEDED


async def test_partial_upload_failure_is_a_warning(make_controller, gateway):
    gateway.fail_uploads.add("b.pdf")
    c = await _active(make_controller)
    c.add_file("a.pdf", b"aaa", "application/pdf")
    c.add_file("b.pdf", b"bbb", "application/pdf")

    result = await c.submit()
    assert result.ok
    assert [w.code for w in result.warnings] == [ErrorCode.UPLOAD_PARTIAL_FAILURE]
    assert result.warnings[0].details["failed"] == ["b.pdf"]

    stored = gateway.only_submission()
    assert stored.status is SubmissionStatus.SUBMITTED
    assert len(stored.answer_files) == 1

    path = next(iter(gateway.uploads))
    assert path.startswith(f"{STUDENT}/exam-1/")
    assert path.endswith("_a.pdf")


# ── 나가기 / 해제 ────────────────────────────────────────────────────────────

async def test_exit_keeps_record_started(make_controller, gateway):
    c = await _active(make_controller)
    c.set_answer(None, "half done")

    result = await c.exit()
    assert result.ok
    assert c.phase is SessionPhase.INTERRUPTED
    assert c.running_timers == []

    stored = gateway.only_submission()
    assert stored.status is SubmissionStatus.STARTED
    assert stored.answer_text == "half done"


async def test_exit_after_submit_is_noop(make_controller):
    c = await _active(make_controller)
    await c.submit()
    assert (await c.exit()).noop


async def test_context_manager_releases_timers(make_controller):
    c = make_controller()
    async with c:
        await c.load("exam-1", STUDENT)
        await c.confirm_start()
        assert c.running_timers
    assert c.running_timers == []
    assert c.phase is SessionPhase.INTERRUPTED


async def test_on_change_receives_snapshots(make_controller):
    seen = []
    c = make_controller(on_change=seen.append)
    await c.load("exam-1", STUDENT)
    await c.confirm_start()
    c.set_answer(None, "x")

    assert seen[-1].phase is SessionPhase.ACTIVE
    assert seen[-1].text == "x"


async def test_periodic_tasks_run_and_stop_on_submit(make_controller, gateway):
    c = await _active(make_controller, tick_interval=0.01, autosave_interval=0.01)
    await asyncio.sleep(0.05)
    assert gateway.count("update_submission") >= 1

    await c.submit()
    writes = gateway.count("update_submission")
    await asyncio.sleep(0.05)

    assert c.running_timers == []
    assert gateway.count("update_submission") == writes


async def test_auto_submit_from_running_tick_loop(make_controller, clock, gateway):
    c = await _active(make_controller, tick_interval=0.01)
    c.set_answer(None, "essay")

    clock.set(T + timedelta(minutes=61))
    await asyncio.sleep(0.1)

    assert c.phase is SessionPhase.SUBMITTED
    assert gateway.count("update_submission") == 1
    assert gateway.only_submission().answer_text == "essay"
    assert c.running_timers == []
