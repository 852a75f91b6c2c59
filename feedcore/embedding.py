from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional, Protocol

import httpx
import numpy as np
from aiolimiter import AsyncLimiter

from feedcore.config import Settings
from feedcore.constants import (
    EMBEDDING_HTTP_TIMEOUT,
    EMBEDDING_INPUT_MAX_CHARS,
    SYNC_USER_AGENT,
)
from feedcore.errors import PermanentEmbeddingError, TransientEmbeddingError
from feedcore.models import Vector

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 409, 425, 429}


def content_hash(title: str, excerpt: Optional[str]) -> str:
    """Fingerprint of the text an article is embedded from."""
    return hashlib.sha256(f"{title}|{excerpt or ''}".encode()).hexdigest()


def prepare_embedding_input(title: str, excerpt: Optional[str]) -> str:
    clean_title = title.strip()
    clean_excerpt = (excerpt or "").strip()
    text = f"{clean_title}\n\n{clean_excerpt}" if clean_excerpt else clean_title
    return text[:EMBEDDING_INPUT_MAX_CHARS]


class EmbeddingProvider(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    async def embed(self, text: str) -> Vector: ...


def _parse_retry_after(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = datetime.now(dt.tzinfo)
    return max(0.0, (dt - now).total_seconds())


def retry_after_seconds(resp: httpx.Response) -> float | None:
    header = resp.headers.get("retry-after")
    if not header:
        return None
    return _parse_retry_after(header)


def _extract_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
    return resp.text.strip()


class OpenAIEmbeddingProvider:
    """OpenAI-compatible /embeddings client with a request-rate ceiling.

    408/429/5xx and network failures raise TransientEmbeddingError (with the
    Retry-After cooldown when sent); any other 4xx, a malformed payload or a
    vector of the wrong size raises PermanentEmbeddingError.
    """

    name = "openai"

    def __init__(
        self,
        settings: Settings,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.api_key = api_key or os.environ.get(settings.embedding_api_key_env)
        self.url = settings.embedding_api_base.rstrip("/") + "/embeddings"
        self.dimensions = settings.embedding_dimensions
        self._client = client
        self._owns_client = client is None
        self._limiter = AsyncLimiter(settings.embedding_requests_per_second, 1)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=EMBEDDING_HTTP_TIMEOUT)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def embed(self, text: str) -> Vector:
        if not self.api_key:
            raise PermanentEmbeddingError(
                f"{self.settings.embedding_api_key_env} is not set"
            )
        if not text.strip():
            raise PermanentEmbeddingError("Cannot embed empty text")

        payload = {
            "model": self.settings.embedding_model,
            "input": text,
            "dimensions": self.dimensions,
        }
        try:
            async with self._limiter:
                resp = await self._get_client().post(
                    self.url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                        "User-Agent": SYNC_USER_AGENT,
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise TransientEmbeddingError(f"Embedding request failed: {e}") from e

        if resp.status_code == 200:
            return self._parse_vector(resp)

        error_msg = _extract_error_message(resp)
        if resp.status_code in _TRANSIENT_STATUS or resp.status_code >= 500:
            raise TransientEmbeddingError(
                f"Embedding API error {resp.status_code}: {error_msg}",
                cooldown=retry_after_seconds(resp),
            )
        raise PermanentEmbeddingError(
            f"Embedding API error {resp.status_code}: {error_msg}"
        )

    def _parse_vector(self, resp: httpx.Response) -> Vector:
        try:
            data = resp.json()
            raw = data["data"][0]["embedding"]
            vector = np.asarray(raw, dtype=np.float32)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PermanentEmbeddingError(f"Malformed embedding response: {e}") from e
        if vector.ndim != 1 or vector.shape[0] != self.dimensions:
            raise PermanentEmbeddingError(
                f"Invalid embedding dimensions: expected {self.dimensions}, "
                f"got {vector.shape[0] if vector.ndim == 1 else vector.shape}"
            )
        if not np.all(np.isfinite(vector)):
            raise PermanentEmbeddingError("Embedding contains non-finite values")
        return vector
