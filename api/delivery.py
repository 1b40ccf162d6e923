import logging
import mimetypes
import os

from fastapi.responses import StreamingResponse

from config.settings import STREAM_CHUNK_SIZE
from engine.errors import ArchiveFailure, NoOutputProduced
from media.packaging import (
    PackagingDecision,
    PackagingMode,
    archive_entries,
    archive_filename,
    download_filename,
    iter_zip_archive,
)


def _safe_filename(name):
    cleaned = name.replace('"', "'").replace("\n", " ").replace("\r", " ").strip()
    # Header values must be latin-1; keep the ASCII subset.
    cleaned = cleaned.encode("ascii", "ignore").decode("ascii").strip()
    return cleaned or "download"


def _iter_file(path, chunk_size=STREAM_CHUNK_SIZE):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def iter_session_stream(session, chunks, label):
    """Relay ``chunks`` and clean ``session`` up on completion, error or close."""
    completed = False
    try:
        yield from chunks
        completed = True
    except Exception:
        logging.exception("Client %s stream failed key=%s", label, session.key)
        raise
    finally:
        if completed:
            logging.info("HTTP client %s complete → cleanup", label)
        else:
            logging.warning("HTTP client %s incomplete → cleanup", label)
        session.cleanup()


class SessionStreamingResponse(StreamingResponse):
    """StreamingResponse that releases its session however the send ends.

    The body generator may never be entered when the client is already gone
    (``http.response.start`` fails), so cleanup hangs off the ASGI call itself.
    """

    def __init__(self, session, content, **kwargs):
        super().__init__(content, **kwargs)
        self.session = session

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self.session.cleanup():
                logging.warning(
                    "HTTP client response aborted before stream ended → cleanup key=%s", self.session.key
                )


def stream_single_file(session, path, filename, *, headers=None, chunk_size=STREAM_CHUNK_SIZE):
    """Stream one produced file and clean the session up once the stream ends.

    Cleanup runs when the body generator finishes or is closed and again when
    the response call returns or raises; it is idempotent.
    """
    try:
        size = os.path.getsize(path)
    except OSError as exc:
        raise NoOutputProduced("Downloaded file disappeared before streaming", details=str(exc)) from exc

    safe_name = _safe_filename(filename)
    content_type, _ = mimetypes.guess_type(safe_name)
    response_headers = {
        "Content-Disposition": f'attachment; filename="{safe_name}"',
        "Content-Length": str(size),
    }
    response_headers.update(headers or {})
    logging.info("HTTP client download started key=%s file=%s size=%s", session.key, safe_name, size)

    return SessionStreamingResponse(
        session,
        iter_session_stream(session, _iter_file(path, chunk_size), "download"),
        media_type=content_type or "application/octet-stream",
        headers=response_headers,
    )


def stream_archive(session, files, archive_name, *, chunk_size=STREAM_CHUNK_SIZE):
    """Stream a zip of ``files`` built on the fly; cleanup as for single files."""
    entries = archive_entries(files)
    missing = [str(path) for path, _ in entries if not os.path.isfile(path)]
    if missing:
        raise ArchiveFailure("Failed to create archive", details=", ".join(missing))

    safe_name = _safe_filename(archive_name)
    headers = {"Content-Disposition": f'attachment; filename="{safe_name}"'}
    logging.info(
        "HTTP client archive started key=%s file=%s entries=%d", session.key, safe_name, len(entries)
    )

    return SessionStreamingResponse(
        session,
        iter_session_stream(session, iter_zip_archive(entries, chunk_size), "archive"),
        media_type="application/zip",
        headers=headers,
    )


def deliver(session, decision: PackagingDecision, *, filename=None, platform="generic"):
    if decision.mode == PackagingMode.ARCHIVE:
        return stream_archive(session, decision.ordered_files, archive_filename(filename, platform))
    return stream_single_file(session, decision.primary, download_filename(filename, decision.primary))
