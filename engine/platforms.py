"""Platform detection and per-platform yt-dlp strategies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

GENERIC = "generic"
DIRECT_VIDEO = "direct-video"

# Ordered; first match wins.
_PLATFORM_DOMAINS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("youtube", ("youtube.com", "youtu.be")),
    ("instagram", ("instagram.com",)),
    ("facebook", ("facebook.com", "fb.watch")),
    ("twitter", ("twitter.com",)),
    ("tiktok", ("tiktok.com",)),
    ("vimeo", ("vimeo.com",)),
    ("dailymotion", ("dailymotion.com",)),
    ("twitch", ("twitch.tv",)),
    ("reddit", ("reddit.com",)),
    ("streamable", ("streamable.com",)),
    ("rumble", ("rumble.com",)),
    ("bitchute", ("bitchute.com",)),
    ("odysee", ("odysee.com", "lbry.tv")),
    ("pornhub", ("pornhub.com",)),
    ("xvideos", ("xvideos.com",)),
)

# Matched against the host only; a substring test would also hit e.g. netflix.com.
_HOST_ALIASES = {"x.com": "twitter"}

DIRECT_VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".avi", ".mkv", ".flv", ".wmv", ".m4v")

PLATFORM_TAGS = tuple(tag for tag, _ in _PLATFORM_DOMAINS) + (DIRECT_VIDEO, GENERIC)

_DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def detect_platform(url: str) -> str:
    """Classify a URL into one platform tag.

    Pure and total: anything unrecognised (including empty or malformed input)
    is ``generic``.
    """
    raw = (url or "").strip().lower()
    if not raw:
        return GENERIC

    for tag, domains in _PLATFORM_DOMAINS:
        if any(domain in raw for domain in domains):
            return tag

    host = _host_of(raw)
    for alias, tag in _HOST_ALIASES.items():
        if host == alias or host.endswith("." + alias):
            return tag

    path = _path_of(raw)
    if path.endswith(DIRECT_VIDEO_EXTENSIONS):
        return DIRECT_VIDEO
    return GENERIC


def _host_of(raw: str) -> str:
    try:
        return (urlparse(raw).hostname or "").lower()
    except ValueError:
        return ""


def _path_of(raw: str) -> str:
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw
    return parsed.path or raw


@dataclass(frozen=True)
class PlatformStrategy:
    tag: str
    display_name: str
    playlist: str = "no"  # "yes" expands carousels, "no" pins a single item
    allows_multi_file: bool = False
    no_check_certificate: bool = False
    user_agent: Optional[str] = None
    send_referer: bool = False
    extractor_retries: Optional[int] = None
    fragment_retries: Optional[int] = None
    retry_sleep: Optional[str] = None
    sleep_interval: Optional[int] = None
    max_sleep_interval: Optional[int] = None
    ignore_errors: bool = False
    no_abort_on_error: bool = False
    force_ipv4: bool = False
    geo_bypass: bool = False
    write_info_json: bool = False
    write_thumbnail: bool = False
    cookies_env: Optional[str] = None
    auth_failure_patterns: tuple[str, ...] = ()


_SOCIAL_AUTH_PATTERNS = ("login required", "authentication", "cookies", "rate-limit")

_STRATEGIES: dict[str, PlatformStrategy] = {
    "instagram": PlatformStrategy(
        tag="instagram",
        display_name="Instagram",
        playlist="yes",
        allows_multi_file=True,
        no_check_certificate=True,
        user_agent=_DESKTOP_USER_AGENT,
        send_referer=True,
        extractor_retries=3,
        fragment_retries=3,
        retry_sleep="linear=1::2",
        sleep_interval=1,
        max_sleep_interval=5,
        ignore_errors=True,
        write_info_json=True,
        write_thumbnail=True,
        cookies_env="INSTAGRAM_COOKIES_FILE",
        auth_failure_patterns=_SOCIAL_AUTH_PATTERNS,
    ),
    "facebook": PlatformStrategy(
        tag="facebook",
        display_name="Facebook",
        no_check_certificate=True,
        user_agent=_DESKTOP_USER_AGENT,
        send_referer=True,
        extractor_retries=3,
        fragment_retries=3,
        retry_sleep="linear=1::2",
        sleep_interval=1,
        max_sleep_interval=5,
        cookies_env="FACEBOOK_COOKIES_FILE",
        auth_failure_patterns=_SOCIAL_AUTH_PATTERNS,
    ),
    "youtube": PlatformStrategy(
        tag="youtube",
        display_name="YouTube",
        no_check_certificate=True,
        user_agent=_DESKTOP_USER_AGENT,
        extractor_retries=10,
        fragment_retries=10,
        retry_sleep="linear=1::5",
        sleep_interval=2,
        max_sleep_interval=10,
        ignore_errors=True,
        no_abort_on_error=True,
        force_ipv4=True,
        geo_bypass=True,
        cookies_env="YOUTUBE_COOKIES_FILE",
        auth_failure_patterns=(
            "sign in to confirm you",
            "login required",
            "use --cookies",
        ),
    ),
    "twitter": PlatformStrategy(tag="twitter", display_name="Twitter", no_check_certificate=True),
    "reddit": PlatformStrategy(tag="reddit", display_name="Reddit", no_check_certificate=True),
    DIRECT_VIDEO: PlatformStrategy(
        tag=DIRECT_VIDEO,
        display_name="Direct video",
        no_check_certificate=True,
        user_agent=_DESKTOP_USER_AGENT,
        send_referer=True,
        ignore_errors=True,
    ),
    GENERIC: PlatformStrategy(
        tag=GENERIC,
        display_name="Website",
        no_check_certificate=True,
        user_agent=_DESKTOP_USER_AGENT,
        send_referer=True,
    ),
}


def get_platform_strategy(tag: str) -> PlatformStrategy:
    """Return the strategy for ``tag``; platforms without tuning get plain defaults."""
    strategy = _STRATEGIES.get(tag)
    if strategy is not None:
        return strategy
    if tag in PLATFORM_TAGS:
        return PlatformStrategy(tag=tag, display_name=tag.capitalize())
    return _STRATEGIES[GENERIC]


def render_platform_args(strategy: PlatformStrategy, url: str) -> list[str]:
    """Render a strategy into yt-dlp CLI flags (no cookies, no URL)."""
    args: list[str] = []
    if strategy.playlist == "yes":
        args.append("--yes-playlist")
    else:
        args.append("--no-playlist")
    if strategy.no_abort_on_error:
        args.append("--no-abort-on-error")
    if strategy.ignore_errors:
        args.append("--ignore-errors")
    if strategy.no_check_certificate:
        args.append("--no-check-certificate")
    if strategy.user_agent:
        args.extend(["--user-agent", strategy.user_agent])
    if strategy.send_referer:
        args.extend(["--referer", url])
    if strategy.extractor_retries is not None:
        args.extend(["--extractor-retries", str(strategy.extractor_retries)])
    if strategy.fragment_retries is not None:
        args.extend(["--fragment-retries", str(strategy.fragment_retries)])
    if strategy.retry_sleep:
        args.extend(["--retry-sleep", strategy.retry_sleep])
    if strategy.sleep_interval is not None:
        args.extend(["--sleep-interval", str(strategy.sleep_interval)])
    if strategy.max_sleep_interval is not None:
        args.extend(["--max-sleep-interval", str(strategy.max_sleep_interval)])
    if strategy.force_ipv4:
        args.append("--force-ipv4")
    if strategy.geo_bypass:
        args.append("--geo-bypass")
    if strategy.write_info_json:
        args.append("--write-info-json")
    if strategy.write_thumbnail:
        args.append("--write-thumbnail")
    return args


def classify_auth_failure(platform: str, stderr: Optional[str]) -> bool:
    """Return True when ``stderr`` matches the platform's login-gate signals."""
    if not stderr:
        return False
    patterns = get_platform_strategy(platform).auth_failure_patterns
    if not patterns:
        return False
    lower_msg = stderr.lower()
    return any(pattern in lower_msg for pattern in patterns)


def auth_guidance(platform: str, *, is_production: bool) -> tuple[str, str]:
    """Return ``(message, guidance)`` for a login-gated platform failure."""
    name = get_platform_strategy(platform).display_name
    if is_production:
        message = f"{name} authentication not available in production"
        guidance = (
            f"{name} downloads require browser cookies which are not available on the "
            "production server. This is a limitation of the hosting environment. Try:\n"
            "1. Using a public post URL (some may work without authentication)\n"
            f"2. Running the application locally for {name} downloads\n"
            "3. Using alternative platforms like YouTube, TikTok, or Twitter"
        )
    else:
        message = f"{name} requires authentication"
        guidance = (
            f"This {name} content requires login. The platform has restricted access to "
            "prevent automated downloads. Try:\n"
            "1. Using a public post URL instead of private content\n"
            "2. Checking if the content is publicly accessible\n"
            "3. The content may be geo-restricted or require account access"
        )
    return message, guidance
