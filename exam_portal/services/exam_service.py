"""
services/exam_service.py

시험 목록/상태 판정 비즈니스 로직.
저장소 호출 없이 시험과 제출 기록만으로 판정한다.
"""

from datetime import datetime
from typing import Optional

from exam_portal.models.exam_model import Exam, ExamOverview
from exam_portal.models.submission_model import ExamSubmission, SubmissionStatus
from exam_portal.services.timer_service import format_time_until_start


def classify_exam(
    exam: Exam,
    submission: Optional[ExamSubmission],
    now: datetime,
) -> ExamOverview:
    """
    학생 한 명 기준 시험 상태를 판정한다.

    우선순위:
      graded > submitted > active(이어서 응시 가능) > active(시험 시간 중)
      > upcoming > ended

    Args:
        exam:       판정 대상 시험
        submission: 해당 학생의 제출 기록 (없으면 None)
        now:        현재 시각 (timezone-aware)

    Returns:
        ExamOverview. can_start는 시험 시간 중인 온라인 시험이고 기록이 없거나 not_started일 때만 True.
    """
    in_window = exam.start_time <= now < exam.end_time
    is_upcoming = now < exam.start_time
    is_ended = now >= exam.end_time

    is_graded = submission is not None and submission.status == SubmissionStatus.GRADED
    is_submitted = submission is not None and submission.is_sealed
    in_progress = submission is not None and submission.is_in_progress

    can_resume = in_progress and not is_ended and exam.is_online
    can_start = (
        exam.is_online
        and in_window
        and (submission is None or submission.status == SubmissionStatus.NOT_STARTED)
    )

    if is_graded:
        status = "graded"
    elif is_submitted:
        status = "submitted"
    elif can_resume or in_window:
        status = "active"
    elif is_upcoming:
        status = "upcoming"
    else:
        status = "ended"

    return ExamOverview(
        exam_id=exam.id,
        title=exam.title,
        exam_type=exam.exam_type,
        status=status,
        is_online=exam.is_online,
        can_start=can_start,
        can_resume=can_resume,
        time_until_start=format_time_until_start(exam, now),
        start_time=exam.start_time,
        end_time=exam.end_time,
    )


def answered_progress(exam: Exam, answers: dict) -> dict:
    """
    구조화 시험의 응답 진행 현황.

    Returns:
        {"total": int, "answered": int, "unanswered": int}
        문항이 없는 시험이면 모두 0.
    """
    total = len(exam.questions)
    answered = sum(1 for q in exam.questions if answers.get(q.id) not in (None, ""))
    return {"total": total, "answered": answered, "unanswered": total - answered}
