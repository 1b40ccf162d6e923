import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version

from config.settings import APP_VERSION, FFMPEG_BIN, FFPROBE_BIN, YTDLP_BIN


def get_runtime_info():
    return {
        "app_version": APP_VERSION,
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
    }


def get_tool_availability():
    """Report which external tools resolve on PATH."""
    return {
        "yt_dlp": shutil.which(YTDLP_BIN) is not None,
        "ffmpeg": shutil.which(FFMPEG_BIN) is not None,
        "ffprobe": shutil.which(FFPROBE_BIN) is not None,
    }
