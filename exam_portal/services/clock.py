"""
services/clock.py

현재 시각 공급원.
시험 시작/종료 시각은 서버 값을 신뢰하고, "지금"만 여기서 얻는다.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class ClockSource(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """로컬 시스템 시계 (UTC, timezone-aware)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class OffsetClock:
    """
    기준 시계와의 오차를 보정하는 시계.

    sync()에 신뢰할 수 있는 기준 시각(예: DB 서버 시각)을 넘기면
    로컬 시계와의 차이를 오프셋으로 기억하고 이후 now()에 반영한다.
    """

    def __init__(self, offset_seconds: float = 0.0, base: Optional[ClockSource] = None):
        self._base = base or SystemClock()
        self._offset = timedelta(seconds=offset_seconds)

    @property
    def offset_seconds(self) -> float:
        return self._offset.total_seconds()

    def sync(self, reference_now: datetime) -> float:
        """기준 시각으로 오프셋을 다시 계산하고 초 단위로 반환."""
        if reference_now.tzinfo is None:
            reference_now = reference_now.replace(tzinfo=timezone.utc)
        self._offset = reference_now - self._base.now()
        return self.offset_seconds

    def now(self) -> datetime:
        return self._base.now() + self._offset
