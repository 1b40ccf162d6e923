#!/usr/bin/env python3
import asyncio
import concurrent.futures
import functools
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import anyio
from fastapi import Body, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.delivery import deliver, stream_single_file
from config.settings import (
    APP_VERSION,
    HOST,
    MAX_UPLOAD_BYTES,
    PORT,
    STREAM_CHUNK_SIZE,
    WATCHDOG_INTERVAL_SECONDS,
)
from engine.errors import AudioTopologyEmpty, MediaRelayError
from engine.extraction import ExtractionRequest, run_extraction
from engine.json_utils import log_event
from engine.paths import SESSIONS_DIR, build_engine_paths, ensure_dir
from engine.quality import TRANSCODE_TIERS, get_quality_spec, quality_options
from engine.runtime import get_runtime_info, get_tool_availability
from engine.sessions import SessionRegistry
from engine.transcode import VALID_FORMATS, VALID_RESOLUTIONS, TranscodeRequest, run_transcode
from media.channel_remap import ChannelMapping
from media.ffprobe import empty_topology_summary, probe_audio_topology, topology_summary
from media.packaging import decide_packaging

APP_NAME = "MediaRelay API"

app = FastAPI(
    title=APP_NAME,
    description="Fetch, transcode and channel-remap media through yt-dlp and ffmpeg.",
)
app.state.registry = SessionRegistry(SESSIONS_DIR)


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "mediarelay.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _registry() -> SessionRegistry:
    return app.state.registry


@app.on_event("startup")
async def startup():
    paths = build_engine_paths()
    _setup_logging(paths.log_dir)
    tools = get_tool_availability()
    logging.info(
        "%s %s starting; sessions=%s tools=%s", APP_NAME, APP_VERSION, paths.sessions_dir, tools
    )
    if not tools["yt_dlp"]:
        logging.warning("yt-dlp not found on PATH; downloads will fail")


@app.on_event("shutdown")
async def shutdown():
    live = _registry().active_keys()
    if live:
        logging.info("Shutdown: stopping %d live session(s)", len(live))
    await anyio.to_thread.run_sync(_registry().shutdown)


@app.exception_handler(MediaRelayError)
async def media_relay_error_handler(request: Request, exc: MediaRelayError):
    payload = exc.to_payload()
    log_event(
        logging.WARNING,
        "REQUEST_FAILED",
        path=request.url.path,
        status_code=exc.status_code,
        error=payload,
    )
    return JSONResponse(status_code=exc.status_code, content=payload)


def _client_liveness_probe(request: Request):
    """Build a thread-safe ``is_alive`` callable for the session watchdog."""
    loop = asyncio.get_running_loop()

    def _is_alive():
        try:
            future = asyncio.run_coroutine_threadsafe(request.is_disconnected(), loop)
        except RuntimeError:
            # Event loop already closed; the process is shutting down.
            return True
        try:
            return not future.result(timeout=max(WATCHDOG_INTERVAL_SECONDS, 0.5))
        except concurrent.futures.TimeoutError:
            future.cancel()
            return True

    return _is_alive


async def _save_upload(upload: UploadFile, dest: Path) -> int:
    written = 0
    with open(dest, "wb") as handle:
        while True:
            chunk = await upload.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > MAX_UPLOAD_BYTES:
                raise HTTPException(status_code=413, detail="Uploaded file is too large")
            handle.write(chunk)
    await upload.close()
    return written


def _upload_suffix(upload: UploadFile) -> str:
    suffix = Path(upload.filename or "").suffix.lower()
    return suffix if suffix.isascii() and len(suffix) <= 10 else ""


def _parse_channel(value, name):
    if value is None or str(value).strip() == "":
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be a non-negative integer")
    if parsed < 0:
        raise HTTPException(status_code=400, detail=f"{name} must be a non-negative integer")
    return parsed


class DownloadVideoRequest(BaseModel):
    url: str | None = None
    quality: str = "high"
    filename: str | None = None


class CancelDownloadRequest(BaseModel):
    url: str | None = None
    key: str | None = None


@app.get("/api/health")
async def api_health():
    tools = get_tool_availability()
    return {
        "status": "ok" if tools["yt_dlp"] else "degraded",
        "tools": tools,
        "message": "yt-dlp is available" if tools["yt_dlp"] else "yt-dlp is not installed",
    }


@app.get("/api/version")
async def api_version():
    info = get_runtime_info()
    info["timestamp"] = datetime.now(timezone.utc).isoformat()
    return info


@app.get("/api/quality-options")
async def api_quality_options():
    return {"options": quality_options()}


@app.get("/api/sessions")
async def api_sessions():
    return {"sessions": _registry().active_keys()}


@app.post("/api/download-video")
async def api_download_video(request: Request, payload: DownloadVideoRequest = Body(...)):
    url = (payload.url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="URL is required")
    quality = get_quality_spec(payload.quality)
    if quality is None:
        raise HTTPException(status_code=400, detail="Invalid quality option")

    registry = _registry()
    session = registry.register(url, kind="download")
    handed_off = False
    try:
        registry.watch(session, _client_liveness_probe(request))
        extraction = await anyio.to_thread.run_sync(
            functools.partial(
                run_extraction,
                registry,
                session,
                ExtractionRequest(url=url, quality=quality.tier, filename=payload.filename),
            )
        )
        # From here the response stream owns disconnect handling and cleanup.
        registry.unwatch(session)
        decision = decide_packaging(
            extraction.files,
            allows_multi_file=extraction.strategy.allows_multi_file,
        )
        response = deliver(
            session,
            decision,
            filename=payload.filename,
            platform=extraction.platform,
        )
        handed_off = True
        return response
    finally:
        if not handed_off:
            session.cleanup()


@app.post("/api/convert-video")
async def api_convert_video(
    request: Request,
    video: UploadFile | None = File(default=None),
    url: str | None = Form(default=None),
    format: str = Form(default="mp4"),
    quality: str = Form(default="medium"),
    left_channel: str | None = Form(default=None),
    right_channel: str | None = Form(default=None),
    resolution: str | None = Form(default=None),
    session_key: str | None = Form(default=None),
):
    url = (url or "").strip()
    if video is None and not url:
        raise HTTPException(status_code=400, detail="No video file or URL provided")
    target_format = (format or "").strip().lower()
    if target_format not in VALID_FORMATS:
        raise HTTPException(status_code=400, detail="Invalid output format")
    quality = (quality or "").strip().lower()
    if quality not in TRANSCODE_TIERS:
        raise HTTPException(status_code=400, detail="Invalid quality option")
    resolution = (resolution or "").strip() or None
    if resolution and resolution not in VALID_RESOLUTIONS:
        raise HTTPException(status_code=400, detail="Invalid resolution")
    left = _parse_channel(left_channel, "left_channel")
    right = _parse_channel(right_channel, "right_channel")
    if (left is None) != (right is None):
        raise HTTPException(status_code=400, detail="Both left_channel and right_channel are required")
    mapping = ChannelMapping(left=left, right=right) if left is not None else None

    key = (session_key or "").strip() or url or f"upload:{uuid4().hex}"
    registry = _registry()
    session = registry.register(key, kind="convert")
    handed_off = False
    try:
        if video is not None:
            source = session.temp_dir / f"input{_upload_suffix(video)}"
            size = await _save_upload(video, source)
            log_event(logging.INFO, "UPLOAD_SAVED", key=key, filename=video.filename, size=size)
            source_ref, source_name = str(source), video.filename
        else:
            source_ref, source_name = url, None

        registry.watch(session, _client_liveness_probe(request))
        output_path = await anyio.to_thread.run_sync(
            functools.partial(
                run_transcode,
                registry,
                session,
                TranscodeRequest(
                    source=source_ref,
                    output_format=target_format,
                    quality=quality,
                    mapping=mapping,
                    resolution=resolution,
                    source_name=source_name,
                ),
            )
        )
        registry.unwatch(session)
        response = stream_single_file(
            session,
            output_path,
            output_path.name,
            headers={"X-Session-Key": key},
        )
        handed_off = True
        return response
    finally:
        if not handed_off:
            session.cleanup()


@app.post("/api/probe-audio")
async def api_probe_audio(
    video: UploadFile | None = File(default=None),
    url: str | None = Form(default=None),
):
    url = (url or "").strip()
    if video is None and not url:
        raise HTTPException(status_code=400, detail="No video file or URL provided")

    probe_dir = None
    try:
        if video is not None:
            temp_root = _registry().temp_root
            ensure_dir(temp_root)
            probe_dir = tempfile.mkdtemp(prefix="probe-", dir=str(temp_root))
            source = Path(probe_dir) / f"input{_upload_suffix(video)}"
            await _save_upload(video, source)
            source_ref = str(source)
        else:
            source_ref = url
        try:
            topology = await anyio.to_thread.run_sync(probe_audio_topology, source_ref)
        except AudioTopologyEmpty:
            return empty_topology_summary("No audio streams found in video")
        return topology_summary(topology)
    finally:
        if probe_dir:
            shutil.rmtree(probe_dir, ignore_errors=True)


@app.post("/api/cancel-download")
async def api_cancel_download(payload: CancelDownloadRequest = Body(...)):
    key = (payload.key or payload.url or "").strip()
    if not key:
        raise HTTPException(status_code=400, detail="URL is required")
    logging.info("Cancel requested key=%s", key)
    if not _registry().cancel(key):
        raise HTTPException(status_code=404, detail="No active download found for this URL")
    return {"success": True, "message": "Download cancelled", "key": key}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=HOST, port=PORT)
