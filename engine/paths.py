import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("MEDIARELAY_DATA_DIR", _DEFAULTS["data"])).resolve()
LOG_DIR = Path(os.environ.get("MEDIARELAY_LOG_DIR", _DEFAULTS["logs"])).resolve()
TEMP_DIR = Path(os.environ.get("MEDIARELAY_TEMP_DIR", DATA_DIR / "tmp")).resolve()
SESSIONS_DIR = TEMP_DIR / "sessions"


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    sessions_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def build_engine_paths():
    for d in (SESSIONS_DIR, LOG_DIR):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(LOG_DIR),
        sessions_dir=str(SESSIONS_DIR),
    )
