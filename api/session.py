"""
api/session.py — 브라우저 세션별 시험 컨트롤러 보관소 (쿠키 기반)

쿠키의 세션 ID마다 {exam_id: ExamSessionController}를 보관한다.
세션이 TTL(기본 1시간) 동안 쓰이지 않으면 만료되고,
만료/초기화/교체로 빠지는 컨트롤러는 close()로 주기 작업까지 해제한다.
"""

import threading
import time
import uuid

from config import SESSION_TTL
from exam_portal.services.exam_session import ExamSessionController

_lock = threading.Lock()
_controllers: dict[str, dict[str, ExamSessionController]] = {}
_last_seen: dict[str, float] = {}


def _release(controllers) -> None:
    for controller in controllers:
        controller.close()


def create_session() -> str:
    """새 세션 ID 발급."""
    sid = uuid.uuid4().hex
    with _lock:
        _controllers[sid] = {}
        _last_seen[sid] = time.time()
    return sid


def is_alive(sid: str) -> bool:
    """유효한 세션이면 접근 시각을 갱신하고 True. 만료된 세션은 여기서 정리된다."""
    with _lock:
        if sid not in _controllers:
            return False
        if time.time() - _last_seen[sid] <= SESSION_TTL:
            _last_seen[sid] = time.time()
            return True
        dropped = _controllers.pop(sid)
        del _last_seen[sid]
    _release(dropped.values())
    return False


def get_controller(sid: str, exam_id: str) -> ExamSessionController | None:
    if not is_alive(sid):
        return None
    with _lock:
        return _controllers.get(sid, {}).get(exam_id)


def set_controller(sid: str, exam_id: str, controller: ExamSessionController) -> None:
    """컨트롤러 등록. 같은 시험의 이전 컨트롤러는 해제한다."""
    with _lock:
        if sid not in _controllers:
            return
        previous = _controllers[sid].get(exam_id)
        _controllers[sid][exam_id] = controller
        _last_seen[sid] = time.time()
    if previous is not None and previous is not controller:
        previous.close()


def reset(sid: str) -> None:
    """세션의 모든 컨트롤러 해제 (세션 ID는 유지)."""
    with _lock:
        dropped = _controllers.get(sid, {})
        if sid in _controllers:
            _controllers[sid] = {}
            _last_seen[sid] = time.time()
    _release(dropped.values())


def cleanup_expired() -> int:
    """만료된 세션 정리. 제거된 세션 수 반환."""
    now = time.time()
    dropped: list[ExamSessionController] = []
    with _lock:
        expired = [sid for sid, ts in _last_seen.items() if now - ts > SESSION_TTL]
        for sid in expired:
            dropped.extend(_controllers.pop(sid).values())
            del _last_seen[sid]
    _release(dropped)
    return len(expired)


def close_all() -> int:
    """서버 종료 시 전체 해제. 제거된 세션 수 반환."""
    with _lock:
        count = len(_controllers)
        dropped = [c for controllers in _controllers.values() for c in controllers.values()]
        _controllers.clear()
        _last_seen.clear()
    _release(dropped)
    return count
