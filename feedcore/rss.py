from __future__ import annotations

import calendar
import hashlib
import html
import logging
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import feedparser
import httpx
from bs4 import BeautifulSoup

from feedcore.constants import (
    EXCERPT_LENGTH,
    EXCERPT_MIN_BREAK,
    MIN_TITLE_LENGTH,
    SYNC_ACCEPT,
    SYNC_FETCH_TIMEOUT,
    SYNC_MAX_FEED_BYTES,
    SYNC_MAX_ITEMS,
    SYNC_USER_AGENT,
)
from feedcore.errors import FetchError, ParseError
from feedcore.models import FeedItem, FetchResponse
from feedcore.url_utils import normalize_url

logger = logging.getLogger(__name__)

_UNWANTED_TAGS = ["script", "style", "iframe", "object", "embed", "form", "input", "button"]


def _strip_html(txt: str) -> str:
    if not txt:
        return ""
    soup = BeautifulSoup(txt, "html.parser")
    for tag in soup(_UNWANTED_TAGS):
        tag.decompose()
    clean = soup.get_text(" ", strip=True)
    clean = html.unescape(clean)
    clean = re.sub(r"\s+([.,;:!?])", r"\1", clean)
    clean = re.sub(r"\s+", " ", clean).strip()
    return clean


def make_excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    """First `length` chars, cut at a word boundary when one is close enough."""
    if len(text) <= length:
        return text
    cut = text[:length]
    last_space = cut.rfind(" ")
    if last_space > EXCERPT_MIN_BREAK:
        cut = cut[:last_space]
    return cut.rstrip() + "..."


def _parse_date(text: str) -> Optional[datetime]:
    if not text:
        return None
    try:
        dt = parsedate_to_datetime(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt
    except (TypeError, ValueError):
        pass
    try:
        dt = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _entry_published(entry: Any) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed_time = entry.get(key)
        if parsed_time:
            return datetime.fromtimestamp(calendar.timegm(parsed_time), tz=UTC)
    date_text = entry.get("published") or entry.get("updated") or ""
    return _parse_date(str(date_text))


def _entry_content(entry: Any) -> str:
    content_list = entry.get("content") or []
    if isinstance(content_list, list) and content_list:
        content_val = content_list[0].get("value")
        if isinstance(content_val, str) and content_val:
            return content_val
    return str(entry.get("summary") or entry.get("description") or "")


def _make_guid(feed_url: str, entry: Any, link: str, title: str) -> str:
    guid = str(entry.get("id") or entry.get("guid") or "").strip()
    if guid:
        return guid
    if link:
        return normalize_url(link)
    key = f"{feed_url}|{title}|{entry.get('published', '')}"
    return "sha256:" + hashlib.sha256(key.encode()).hexdigest()


def parse_feed(
    feed_text: str,
    feed_url: str,
    max_items: int = SYNC_MAX_ITEMS,
) -> list[FeedItem]:
    """Normalize an RSS/Atom document into FeedItems.

    Raises ParseError when the payload is not a feed at all. Entries without
    a usable title are skipped.
    """
    parsed = feedparser.parse(feed_text)
    if parsed.bozo and not parsed.entries:
        raise ParseError(f"Failed to parse feed {feed_url}: {parsed.bozo_exception}")
    if not parsed.entries and not parsed.get("version") and not parsed.feed:
        raise ParseError(f"No feed found at {feed_url}")

    items: list[FeedItem] = []
    seen: set[str] = set()
    for entry in parsed.entries:
        title = _strip_html(str(entry.get("title", "")))
        if len(title) < MIN_TITLE_LENGTH:
            logger.debug("Skipping entry with unusable title in %s", feed_url)
            continue
        link = str(entry.get("link", "") or "").strip()
        guid = _make_guid(feed_url, entry, link, title)
        if guid in seen:
            continue
        seen.add(guid)

        content = _strip_html(_entry_content(entry))
        author = entry.get("author") or None
        items.append(
            FeedItem(
                guid=guid,
                title=title,
                url=link or (guid if guid.startswith("http") else None),
                content=content,
                excerpt=make_excerpt(content),
                author=str(author) if author else None,
                published_at=_entry_published(entry),
            )
        )
        if len(items) >= max_items:
            break
    return items


def conditional_headers(
    etag: Optional[str] = None, last_modified: Optional[str] = None
) -> dict[str, str]:
    headers = {"User-Agent": SYNC_USER_AGENT, "Accept": SYNC_ACCEPT}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    return headers


async def fetch_feed(
    client: httpx.AsyncClient,
    url: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    timeout: float = SYNC_FETCH_TIMEOUT,
) -> FetchResponse:
    """Conditional GET. 304 is returned as a FetchResponse, other failures raise FetchError."""
    try:
        resp = await client.get(
            url,
            headers=conditional_headers(etag, last_modified),
            timeout=timeout,
            follow_redirects=True,
        )
    except httpx.TimeoutException as e:
        raise FetchError(f"Timed out fetching {url}") from e
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch {url}: {e}") from e

    if resp.status_code == 304:
        return FetchResponse(
            status_code=304,
            etag=resp.headers.get("etag") or etag,
            last_modified=resp.headers.get("last-modified") or last_modified,
        )
    if resp.status_code >= 400:
        raise FetchError(
            f"HTTP {resp.status_code}: {resp.reason_phrase}", status_code=resp.status_code
        )

    body = resp.content
    if not body:
        raise ParseError("Feed content is empty", status_code=resp.status_code)
    if len(body) > SYNC_MAX_FEED_BYTES:
        raise FetchError("Feed content is too large", status_code=resp.status_code)

    return FetchResponse(
        status_code=resp.status_code,
        text=resp.text,
        etag=resp.headers.get("etag"),
        last_modified=resp.headers.get("last-modified"),
        size_bytes=len(body),
    )
