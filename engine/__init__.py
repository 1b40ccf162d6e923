from .errors import MediaRelayError
from .paths import EnginePaths
from .runtime import get_runtime_info
from .sessions import DownloadSession, SessionRegistry, SessionState

__all__ = [
    "DownloadSession",
    "EnginePaths",
    "MediaRelayError",
    "SessionRegistry",
    "SessionState",
    "get_runtime_info",
]
