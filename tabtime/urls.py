"""URL normalization and duration formatting."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

# Pages whose content is never timed: browser internals, extensions, local files.
UNTRACKABLE_PREFIXES = (
    "chrome://",
    "chrome-extension://",
    "edge://",
    "about:",
    "file://",
    "moz-extension://",
    "brave://",
    "view-source:",
    "devtools://",
)

# Schemes that must carry a host, with their default ports.
SPECIAL_SCHEMES = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


def normalize_url(raw: object) -> str | None:
    """Return the canonical form of a URL with its fragment removed.

    Fragment-only navigation is not a distinct page, so ``#section`` is
    dropped. Scheme and host are lowercased, default ports are removed and an
    empty path on a web URL becomes ``/``.

    Returns:
        Normalized URL, or None when the input cannot be parsed.
    """
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not candidate:
        return None

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None

    if not parts.scheme:
        return None

    netloc = parts.netloc
    path = parts.path
    if parts.scheme in SPECIAL_SCHEMES:
        if not parts.hostname or any(ch.isspace() for ch in netloc):
            return None
        userinfo, _, hostport = netloc.rpartition("@")
        host = hostport.lower()
        if port is None:
            # "host:" with an empty port
            host = host.removesuffix(":")
        if port is not None and port == SPECIAL_SCHEMES[parts.scheme]:
            host = host.rsplit(":", 1)[0]
        netloc = f"{userinfo}@{host}" if userinfo else host
        if not path:
            path = "/"

    return urlunsplit((parts.scheme, netloc, path, parts.query, ""))


def is_trackable_url(raw: str | None) -> bool:
    """Whether time spent on this raw URL should be recorded at all."""
    if not raw:
        return False
    return not raw.startswith(UNTRACKABLE_PREFIXES)


def trackable_url(raw: str | None) -> str | None:
    """Normalized URL when it is trackable, otherwise None."""
    if not is_trackable_url(raw):
        return None
    return normalize_url(raw)


def format_duration(ms: int | float) -> str:
    """Format milliseconds as HH:MM:SS.

    Truncates to whole seconds. Hours are not wrapped, so 100 hours renders
    as ``100:00:00``.
    """
    total_seconds = max(0, int(ms // 1000))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def split_url(url: str) -> tuple[str, str]:
    """Split a URL into (host, path+query) for display."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url, ""
    if not parts.netloc:
        return url, ""
    sub = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
    return parts.netloc, sub
