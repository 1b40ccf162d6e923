"""Error taxonomy for the extraction/transcode orchestrator.

Every failure of an external tool is translated into exactly one of these
before it leaves a process manager. ``api.main`` renders them through a single
exception handler using ``status_code`` and ``to_payload()``.
"""

from __future__ import annotations

from typing import Any, Optional


class MediaRelayError(Exception):
    """Base exception for all orchestrator errors."""

    error_kind = "MediaRelayError"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error_kind": self.error_kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConflictError(MediaRelayError):
    """Raised when a session is already live for the requested key."""

    error_kind = "ConflictError"
    status_code = 409

    def __init__(self, key: str) -> None:
        super().__init__(f"A request for this key is already in progress: {key}")
        self.key = key


class PlatformAuthRequired(MediaRelayError):
    """Raised when the extraction tool reports a login/cookie gate."""

    error_kind = "PlatformAuthRequired"
    status_code = 403

    def __init__(
        self,
        platform: str,
        message: str,
        *,
        guidance: str,
        is_production: bool,
        auth_supported: bool,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.platform = platform
        self.guidance = guidance
        self.is_production = is_production
        self.auth_supported = auth_supported

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "platform": self.platform,
                "platform_guidance": self.guidance,
                "is_production": self.is_production,
                "auth_supported": self.auth_supported,
            }
        )
        return payload


class NoOutputProduced(MediaRelayError):
    """Raised when a tool exits cleanly but leaves no usable file behind."""

    error_kind = "NoOutputProduced"


class ProcessSpawnFailure(MediaRelayError):
    """Raised when an external tool cannot be started at all."""

    error_kind = "ProcessSpawnFailure"

    def __init__(self, tool: str, message: str, *, details: Optional[str] = None) -> None:
        super().__init__(message, details=details)
        self.tool = tool


class ProcessAbnormalExit(MediaRelayError):
    """Raised when an external tool exits nonzero, times out or emits garbage."""

    error_kind = "ProcessAbnormalExit"

    def __init__(
        self,
        tool: str,
        message: str,
        *,
        returncode: Optional[int] = None,
        category: str = "generic",
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.tool = tool
        self.returncode = returncode
        self.category = category

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["category"] = self.category
        if self.returncode is not None:
            payload["returncode"] = self.returncode
        return payload


class AudioTopologyEmpty(MediaRelayError):
    """Raised when a probed source has no audio streams."""

    error_kind = "AudioTopologyEmpty"
    status_code = 422


class ChannelIndexOutOfRange(MediaRelayError):
    """Raised when a requested channel index does not exist in the topology."""

    error_kind = "ChannelIndexOutOfRange"
    status_code = 400

    def __init__(self, left: int, right: int, channel_count: int) -> None:
        super().__init__(
            "Channel index out of range. "
            f"Available channels: 0-{channel_count - 1}, requested: {left}, {right}"
        )
        self.left = left
        self.right = right
        self.channel_count = channel_count


class ArchiveFailure(MediaRelayError):
    """Raised when a multi-file archive cannot be assembled."""

    error_kind = "ArchiveFailure"


class DownloadCancelled(MediaRelayError):
    """Raised to abort an in-flight request after cancellation."""

    error_kind = "DownloadCancelled"
    status_code = 499
