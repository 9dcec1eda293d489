"""
services/timer_service.py

시험 타이머 계산.
남은 시간은 로컬에서 1초씩 깎아 내려가는 방식이 아니라,
매 틱마다 시험의 고정 시각(start/end)과 현재 시각의 차로 다시 계산한다.
표시되는 시간은 항상 고정된 마감 시각 기준이다.
"""

from datetime import datetime
from typing import Optional

from config import TIME_WARNING_SECONDS
from exam_portal.models.exam_model import Exam
from exam_portal.models.session_state import TimerState


def effective_deadline(exam: Exam, started_at: Optional[datetime] = None) -> datetime:
    """
    이번 응시의 마감 시각.

    응시 시작 시각이 기록되어 있으면 started_at + 시험 시간과
    시험 종료 시각 중 이른 쪽, 없으면 시험 종료 시각.
    """
    if started_at is None:
        return exam.end_time
    return min(exam.end_time, started_at + exam.duration)


def compute_timer_state(
    exam: Exam,
    now: datetime,
    started_at: Optional[datetime] = None,
) -> TimerState:
    """
    현재 시각 기준 타이머 파생값 계산.

    Args:
        exam:       시험 (start_time / end_time 고정값)
        now:        현재 시각 (timezone-aware)
        started_at: 제출 기록의 응시 시작 시각 (없으면 None)

    Returns:
        TimerState. 모든 시간값은 0 이상으로 보정된다.
    """
    deadline = effective_deadline(exam, started_at)
    window = (exam.end_time - exam.start_time).total_seconds()

    until_start = max(0.0, (exam.start_time - now).total_seconds())
    remaining = max(0.0, (deadline - now).total_seconds())
    elapsed = min(window, max(0.0, (now - exam.start_time).total_seconds()))

    is_started = now >= exam.start_time
    is_time_up = is_started and remaining == 0

    return TimerState(
        now=now,
        deadline=deadline,
        time_until_start=until_start,
        time_remaining=remaining,
        time_elapsed=elapsed,
        is_started=is_started,
        is_ended=now >= exam.end_time,
        is_time_up=is_time_up,
        is_warning=is_started and 0 < remaining < TIME_WARNING_SECONDS,
    )


def format_remaining(seconds: float) -> str:
    """남은 시간 표시. 1시간 이상이면 '1h 05m 09s', 미만이면 '05:09'."""
    total = int(max(0.0, seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes:02d}:{secs:02d}"


def format_time_until_start(exam: Exam, now: datetime) -> str:
    """시작까지 남은 시간 요약 ('2d 3h', '3h 5m', '12m'). 이미 시작했으면 'Started'."""
    if now >= exam.start_time:
        return "Started"

    diff = int((exam.start_time - now).total_seconds())
    days = diff // (3600 * 24)
    hours = (diff % (3600 * 24)) // 3600
    minutes = (diff % 3600) // 60

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
