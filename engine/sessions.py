"""Session registry: at most one live external process per request key.

The registry owns the lifecycle of every admitted request:

- ``register`` inserts a session atomically (conflict if the key is live),
- ``spawn`` starts the tool and attaches the process handle,
- ``cancel`` terminates gracefully, then kills once the grace window elapses,
- ``cleanup`` removes the temp directory and the registry entry exactly once,
- ``watch`` polls a client liveness probe and cancels + cleans up when the
  client is gone.

Timers (the delayed kill and the watchdog) run on an APScheduler
``BackgroundScheduler`` that is started lazily on first use.
"""

from __future__ import annotations

import functools
import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import CANCEL_GRACE_SECONDS, WATCHDOG_INTERVAL_SECONDS
from engine.errors import ConflictError, DownloadCancelled, ProcessSpawnFailure
from engine.json_utils import log_event
from engine.paths import ensure_dir

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED})


def _noop_cleanup() -> bool:
    return False


@dataclass(eq=False)
class DownloadSession:
    key: str
    kind: str
    temp_dir: Path
    session_id: str = field(default_factory=lambda: uuid4().hex)
    state: SessionState = SessionState.QUEUED
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    cancel_requested: bool = False
    cleaned: bool = False
    created_at: float = field(default_factory=time.monotonic)
    cleanup: Callable[[], bool] = field(default=_noop_cleanup, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SessionRegistry:
    """Concurrency-safe map of request key -> live session."""

    def __init__(
        self,
        temp_root,
        *,
        grace_seconds: float = CANCEL_GRACE_SECONDS,
        watchdog_interval: float = WATCHDOG_INTERVAL_SECONDS,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self._temp_root = Path(temp_root)
        self._grace_seconds = float(grace_seconds)
        self._watchdog_interval = float(watchdog_interval)
        self._sessions: dict[str, DownloadSession] = {}
        self._lock = threading.Lock()
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._scheduler_lock = threading.Lock()

    @property
    def grace_seconds(self) -> float:
        return self._grace_seconds

    @property
    def temp_root(self) -> Path:
        return self._temp_root

    def register(self, key: str, *, kind: str = "download") -> DownloadSession:
        """Admit a new session for ``key`` or raise ``ConflictError`` if one is live."""
        if not key:
            raise ValueError("session key is required")
        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None:
                log_event(
                    logging.WARNING,
                    "SESSION_CONFLICT",
                    key=key,
                    kind=kind,
                    live_session_id=existing.session_id,
                    live_state=existing.state,
                )
                raise ConflictError(key)
            ensure_dir(self._temp_root)
            temp_dir = Path(tempfile.mkdtemp(prefix=f"{kind}-", dir=str(self._temp_root)))
            session = DownloadSession(key=key, kind=kind, temp_dir=temp_dir)
            session.cleanup = functools.partial(self._cleanup_session, session)
            self._sessions[key] = session
        log_event(
            logging.INFO,
            "SESSION_REGISTERED",
            key=key,
            kind=kind,
            session_id=session.session_id,
            temp_dir=temp_dir,
        )
        return session

    def get(self, key: str) -> Optional[DownloadSession]:
        with self._lock:
            return self._sessions.get(key)

    def active_keys(self) -> list[dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            {
                "key": session.key,
                "kind": session.kind,
                "state": session.state.value,
                "session_id": session.session_id,
                "cancel_requested": session.cancel_requested,
            }
            for session in sessions
        ]

    def spawn(self, session: DownloadSession, argv: Sequence[str], **popen_kwargs) -> subprocess.Popen:
        """Start ``argv`` for ``session`` and move it to ``running``."""
        tool = os.path.basename(str(argv[0])) if argv else "tool"
        with self._lock:
            if session.cleaned or session.cancel_requested:
                raise DownloadCancelled("Request was cancelled before the tool started")
        try:
            proc = subprocess.Popen([str(arg) for arg in argv], **popen_kwargs)
        except FileNotFoundError as exc:
            self.mark(session, SessionState.FAILED)
            raise ProcessSpawnFailure(
                tool,
                f"{tool} is not installed or not available in PATH",
                details=str(exc),
            ) from exc
        except OSError as exc:
            self.mark(session, SessionState.FAILED)
            raise ProcessSpawnFailure(tool, f"Failed to start {tool}", details=str(exc)) from exc

        with self._lock:
            session.process = proc
            cancelled_early = session.cancel_requested
            if not cancelled_early and session.state == SessionState.QUEUED:
                session.state = SessionState.RUNNING
        log_event(
            logging.INFO,
            "SESSION_SPAWNED",
            key=session.key,
            session_id=session.session_id,
            tool=tool,
            pid=proc.pid,
        )
        if cancelled_early:
            # cancel() ran between the pre-check and Popen; it saw no process to stop.
            self._terminate(session, proc)
        return proc

    def mark(self, session: DownloadSession, state: SessionState) -> SessionState:
        """Transition ``session`` to ``state``; terminal states are never overwritten."""
        with self._lock:
            if session.state not in TERMINAL_STATES:
                session.state = state
            return session.state

    def cancel(self, key: str) -> bool:
        """Cancel the live session for ``key``. Returns False when none exists."""
        session = self.get(key)
        if session is None:
            return False
        self.cancel_session(session)
        return True

    def cancel_session(self, session: DownloadSession) -> None:
        with self._lock:
            first_request = not session.cancel_requested
            session.cancel_requested = True
            if session.state not in TERMINAL_STATES:
                session.state = SessionState.CANCELLED
            proc = session.process
        if not first_request:
            return
        log_event(
            logging.INFO,
            "SESSION_CANCEL_REQUESTED",
            key=session.key,
            session_id=session.session_id,
            has_process=proc is not None,
        )
        if proc is not None:
            self._terminate(session, proc)

    def terminate(self, session: DownloadSession) -> None:
        """Stop the session's process (terminate, then kill) without recording a cancel."""
        with self._lock:
            proc = session.process
        if proc is not None:
            self._terminate(session, proc)

    def cleanup(self, key: str) -> bool:
        """Clean up the live session for ``key``; no-op when none exists."""
        session = self.get(key)
        if session is None:
            return False
        return session.cleanup()

    def watch(self, session: DownloadSession, is_alive: Callable[[], bool]) -> None:
        """Poll ``is_alive`` until cleanup; a False answer cancels and cleans up."""
        self._schedule(
            self._check_liveness,
            IntervalTrigger(seconds=self._watchdog_interval),
            job_id=self._watch_job_id(session),
            args=[session, is_alive],
        )

    def unwatch(self, session: DownloadSession) -> None:
        self._remove_job(self._watch_job_id(session))

    def shutdown(self) -> None:
        """Stop every live process and release all sessions."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            self.cancel_session(session)
            proc = session.process
            if proc is not None:
                try:
                    proc.wait(timeout=self._grace_seconds)
                except subprocess.TimeoutExpired:
                    self._force_kill(session, proc)
            session.cleanup()
        with self._scheduler_lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)

    def _cleanup_session(self, session: DownloadSession) -> bool:
        with self._lock:
            if session.cleaned:
                return False
            session.cleaned = True
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
            if session.state not in TERMINAL_STATES:
                session.state = SessionState.FAILED
            proc = session.process
        self.unwatch(session)
        if proc is not None and proc.poll() is None:
            self._terminate(session, proc)
        self._remove_temp_dir(session)
        log_event(
            logging.INFO,
            "SESSION_CLEANED",
            key=session.key,
            session_id=session.session_id,
            state=session.state,
        )
        return True

    def _remove_temp_dir(self, session: DownloadSession) -> None:
        try:
            shutil.rmtree(session.temp_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Error cleaning up temp directory %s", session.temp_dir, exc_info=True)

    def _terminate(self, session: DownloadSession, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        except OSError:
            logger.warning("Failed to terminate pid=%s key=%s", proc.pid, session.key, exc_info=True)
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self._grace_seconds)
        self._schedule(
            self._force_kill,
            DateTrigger(run_date=run_date),
            job_id=f"kill:{session.session_id}",
            args=[session, proc],
        )

    def _force_kill(self, session: DownloadSession, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        log_event(
            logging.WARNING,
            "SESSION_FORCE_KILL",
            key=session.key,
            session_id=session.session_id,
            pid=proc.pid,
            grace_seconds=self._grace_seconds,
        )
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        except OSError:
            logger.exception("Failed to kill pid=%s key=%s", proc.pid, session.key)

    def _check_liveness(self, session: DownloadSession, is_alive: Callable[[], bool]) -> None:
        if session.cleaned:
            self.unwatch(session)
            return
        try:
            alive = bool(is_alive())
        except Exception:
            logger.exception("Liveness probe failed key=%s", session.key)
            return
        if alive:
            return
        log_event(
            logging.WARNING,
            "SESSION_CLIENT_GONE",
            key=session.key,
            session_id=session.session_id,
        )
        self.unwatch(session)
        self.cancel_session(session)
        session.cleanup()

    def _schedule(self, func, trigger, *, job_id: str, args: list) -> None:
        self._ensure_scheduler()
        self._scheduler.add_job(
            func,
            trigger=trigger,
            args=args,
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
            max_instances=1,
        )

    def _remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _ensure_scheduler(self) -> None:
        with self._scheduler_lock:
            if not self._scheduler.running:
                self._scheduler.start()

    @staticmethod
    def _watch_job_id(session: DownloadSession) -> str:
        return f"watch:{session.session_id}"
