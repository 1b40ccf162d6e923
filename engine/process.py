"""Run an external tool as a registry-tracked child process."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional, Sequence

from config.settings import TOOL_TIMEOUT_SECONDS
from engine.errors import DownloadCancelled, ProcessAbnormalExit
from engine.json_utils import log_event
from engine.sessions import SessionState

logger = logging.getLogger(__name__)

# Bounded so a chatty tool cannot grow memory without limit.
_MAX_CAPTURED_LINES = 5000
_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    elapsed: float


def redact_argv(argv: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    i = 0
    while i < len(argv):
        token = str(argv[i])
        if token in {"--cookies", "--cookies-from-browser"}:
            redacted.append(token)
            if i + 1 < len(argv):
                redacted.append("<redacted>")
                i += 2
                continue
        redacted.append(token)
        i += 1
    return redacted


def tail_text(text: Optional[str], lines: int) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


def _reader(stream, sink: deque, tool: str) -> None:
    if stream is None:
        return
    for raw_line in iter(stream.readline, ""):
        sink.append(raw_line)
        logger.debug("%s: %s", tool, raw_line.rstrip())
    try:
        stream.close()
    except OSError:
        pass


def run_tracked(
    registry,
    session,
    argv: Sequence[str],
    *,
    timeout: Optional[float] = TOOL_TIMEOUT_SECONDS,
    capture_stdout: bool = False,
) -> ProcessResult:
    """Spawn ``argv`` through ``registry`` and wait for it to settle.

    The child is attached to ``session`` so cancel/watchdog/cleanup can reach
    it. Stderr (and optionally stdout) is drained on reader threads. A nonzero
    exit is returned to the caller for classification; cancellation raises
    ``DownloadCancelled`` and an expired ``timeout`` raises
    ``ProcessAbnormalExit`` with category ``timeout``.
    """
    tool = os.path.basename(str(argv[0]))
    stderr_lines: deque = deque(maxlen=_MAX_CAPTURED_LINES)
    stdout_lines: deque = deque(maxlen=_MAX_CAPTURED_LINES)
    started = time.monotonic()

    proc = registry.spawn(
        session,
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )

    readers = [
        threading.Thread(
            target=_reader,
            args=(proc.stderr, stderr_lines, tool),
            name=f"{tool}-stderr-reader",
            daemon=True,
        )
    ]
    if capture_stdout:
        readers.append(
            threading.Thread(
                target=_reader,
                args=(proc.stdout, stdout_lines, tool),
                name=f"{tool}-stdout-reader",
                daemon=True,
            )
        )
    for reader in readers:
        reader.start()

    timed_out = False
    while proc.poll() is None:
        if timeout is not None and time.monotonic() - started > timeout:
            timed_out = True
            registry.mark(session, SessionState.FAILED)
            registry.terminate(session)
            break
        time.sleep(_POLL_INTERVAL)

    returncode = _wait_settled(proc, registry.grace_seconds, tool)
    for reader in readers:
        reader.join(timeout=1)
    elapsed = time.monotonic() - started
    stderr_output = "".join(stderr_lines).strip()

    log_event(
        logging.INFO,
        "PROCESS_EXITED",
        key=session.key,
        session_id=session.session_id,
        tool=tool,
        returncode=returncode,
        elapsed=round(elapsed, 3),
        timed_out=timed_out,
        cancelled=session.cancel_requested,
    )

    if timed_out:
        raise ProcessAbnormalExit(
            tool,
            f"{tool} did not finish within {timeout:g} seconds",
            returncode=returncode,
            category="timeout",
            details=stderr_output or None,
        )
    if session.cancel_requested:
        raise DownloadCancelled("Download cancelled", details=stderr_output or None)
    return ProcessResult(
        returncode=returncode,
        stdout="".join(stdout_lines),
        stderr=stderr_output,
        elapsed=elapsed,
    )


def _wait_settled(proc: subprocess.Popen, grace_seconds: float, tool: str) -> int:
    # The registry's delayed kill normally ends a stubborn child; this is the backstop.
    try:
        return proc.wait(timeout=grace_seconds + 5.0)
    except subprocess.TimeoutExpired:
        logger.warning("%s pid=%s outlived its kill timer; killing directly", tool, proc.pid)
        proc.kill()
        return proc.wait()
