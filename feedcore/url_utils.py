from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from url_normalize import url_normalize


def normalize_url(url: str) -> str:
    if not url:
        return ""
    try:
        normalized = url_normalize(url.strip())
    except (ValueError, UnicodeError):
        normalized = url.strip()

    parts = urlsplit(normalized)
    if not parts.scheme or not parts.netloc:
        return normalized
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc.lower(), path, parts.query, ""))


def url_host(url: str) -> str:
    """Lower-cased host without a leading www."""
    host = urlsplit(normalize_url(url)).hostname or ""
    return host.removeprefix("www.")


def host_matches(url: str, domains: list[str] | tuple[str, ...]) -> bool:
    host = url_host(url)
    if not host:
        return False
    return any(host == d or host.endswith("." + d) for d in domains)
