from __future__ import annotations

import asyncio
import inspect
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from widgetgen.models import (
    ConversationMessage,
    DraftWidget,
    GenerationRequest,
    GenerationSession,
    ProgressUpdate,
)

log = logging.getLogger(__name__)

try:
    SESSION_RETENTION_SECONDS = float(os.getenv("SESSION_RETENTION_SECONDS", "3600") or 3600)
except ValueError:
    SESSION_RETENTION_SECONDS = 3600.0
try:
    SESSION_CLEANUP_INTERVAL = float(os.getenv("SESSION_CLEANUP_INTERVAL", "60") or 60)
except ValueError:
    SESSION_CLEANUP_INTERVAL = 60.0

FAILED_PROGRESS = -1

STEP_CONFIG: Dict[str, Dict[str, Any]] = {
    "preparing": {"label": "Preparing", "progress": 0},
    "building-prompt": {"label": "Building prompt", "progress": 15},
    "calling-ai": {"label": "Calling AI", "progress": 50},
    "parsing-response": {"label": "Parsing response", "progress": 70},
    "validating": {"label": "Validating", "progress": 80},
    "scoring-quality": {"label": "Scoring quality", "progress": 88},
    "creating-draft": {"label": "Creating draft", "progress": 95},
    "complete": {"label": "Complete", "progress": 100},
    "failed": {"label": "Failed", "progress": FAILED_PROGRESS},
}

ProgressListener = Callable[[ProgressUpdate], Any]


def get_step_label(step: str) -> str:
    cfg = STEP_CONFIG.get(step)
    return cfg["label"] if cfg else step


def get_step_progress(step: str) -> int:
    cfg = STEP_CONFIG.get(step)
    return cfg["progress"] if cfg else 0


class SessionManager:
    """Owns every GenerationSession; callers only ever see deep copies.

    Status moves active -> complete | failed | cancelled and never back.
    Progress events on a terminal session are recorded but leave the status alone.
    """

    def __init__(
        self,
        retention_seconds: float = SESSION_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = SESSION_CLEANUP_INTERVAL,
    ) -> None:
        self.retention_seconds = retention_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._next_cleanup = clock() + cleanup_interval
        self._lock = threading.RLock()
        self._sessions: Dict[str, GenerationSession] = {}
        self._listeners: Dict[str, List[ProgressListener]] = {}

    def create_session(self, request: GenerationRequest) -> GenerationSession:
        now = self._clock()
        if now >= self._next_cleanup:
            self._next_cleanup = now + self.cleanup_interval
            self.cleanup()
        session_id = f"gen-{uuid.uuid4().hex}"
        session = GenerationSession(id=session_id, request=request, created_at=now, last_activity=now)
        with self._lock:
            self._sessions[session_id] = session
        log.info("sessions.create: id=%s mode=%s", session_id, request.mode)
        self.update_progress(session_id, "preparing", "Preparing generation", 0)
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[GenerationSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def list_sessions(self) -> List[GenerationSession]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def update_progress(self, session_id: str, step: str, message: str, progress: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                log.warning("sessions.progress: unknown session id=%s step=%s", session_id, step)
                return False
            value = FAILED_PROGRESS if step == "failed" else max(0, min(100, int(progress)))
            now = self._clock()
            update = ProgressUpdate(step=step, message=message, progress=value, timestamp=now)  # type: ignore[arg-type]
            session.progress_updates.append(update)
            session.last_activity = now
            if session.status == "active":
                if step == "complete":
                    session.status = "complete"
                elif step == "failed":
                    session.status = "failed"
                    session.error = session.error or message
            listeners = list(self._listeners.get(session_id, ()))
        log.debug("sessions.progress: id=%s step=%s progress=%d", session_id, step, value)
        self._notify(listeners, update)
        return True

    def add_widget(self, session_id: str, widget: DraftWidget) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.widgets.append(widget.model_copy(deep=True))
            session.last_activity = self._clock()
            return True

    def add_message(self, session_id: str, message: ConversationMessage) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.messages.append(message)
            session.last_activity = self._clock()
            return True

    def complete_session(self, session_id: str, message: str = "Widget ready") -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != "active":
                return False
        return self.update_progress(session_id, "complete", message, 100)

    def fail_session(self, session_id: str, error: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != "active":
                return False
            session.error = error
        return self.update_progress(session_id, "failed", error, FAILED_PROGRESS)

    def cancel_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != "active":
                return False
            session.status = "cancelled"
            session.error = "Generation cancelled"
        log.info("sessions.cancel: id=%s", session_id)
        return self.update_progress(session_id, "failed", "Generation cancelled", FAILED_PROGRESS)

    def is_cancelled(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return bool(session and session.status == "cancelled")

    def on_progress(self, session_id: str, callback: ProgressListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(session_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(session_id)
                if listeners and callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def _notify(self, listeners: List[ProgressListener], update: ProgressUpdate) -> None:
        for callback in listeners:
            try:
                result = callback(update.model_copy())
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception:
                log.exception("sessions.notify: listener failed step=%s", update.step)

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("sessions.notify: async listener dropped, no running loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        task.add_done_callback(_log_task_failure)

    def cleanup(self) -> int:
        """Evict terminal sessions idle longer than the retention window."""
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if s.status != "active" and s.last_activity < cutoff
            ]
            for sid in stale:
                self._sessions.pop(sid, None)
                self._listeners.pop(sid, None)
        if stale:
            log.info("sessions.cleanup: evicted=%d", len(stale))
        return len(stale)


def _log_task_failure(task: "asyncio.Task[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("sessions.notify: async listener failed: %r", exc)
