from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Optional

from feedcore.constants import (
    CLUSTER_LABEL_SAMPLES,
    CLUSTER_SUMMARY_MAX_CHARS,
    CLUSTER_TITLE_MAX_CHARS,
    LLM_LABEL_MAX_TOKENS,
    LLM_TEMPERATURE,
)

_TOPIC_RE = re.compile(r"TOPIC:\s*(.+?)(?:\n|$)")
_SUMMARY_RE = re.compile(r"SUMMARY:\s*(.+?)(?:\n|$)")
_SAMPLE_EXCERPT_CHARS = 150

LabelSample = tuple[str, str, str]  # (title, excerpt, source name)


def build_label_prompt(samples: Sequence[LabelSample]) -> str:
    lines: list[str] = []
    for i, (title, excerpt, source) in enumerate(samples[:CLUSTER_LABEL_SAMPLES], 1):
        entry = f'[{i}] "{title}" ({source})'
        if excerpt:
            entry += f"\n   {excerpt[:_SAMPLE_EXCERPT_CHARS]}..."
        lines.append(entry)
    articles = "\n\n".join(lines)
    return (
        "Analyze these related news articles and generate a topic title and summary.\n\n"
        f"Articles:\n{articles}\n\n"
        "Generate:\n"
        "1. A concise topic title (3-8 words) that captures the main story\n"
        "2. A one-sentence summary (max 150 characters) explaining what's happening\n\n"
        "Format your response exactly as:\n"
        "TOPIC: [your topic title]\n"
        "SUMMARY: [your summary]\n\n"
        "Be factual and neutral. Focus on what the articles have in common."
    )


def build_payload(
    model: str,
    prompt: str,
    temperature: float = LLM_TEMPERATURE,
    max_tokens: int = LLM_LABEL_MAX_TOKENS,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": temperature,
    }
    if max_tokens > 0:
        payload["max_tokens"] = int(max_tokens)
    return payload


def extract_message_text(data: object) -> Optional[str]:
    """Pull choices[0].message.content out of a chat-completion response."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def parse_label(text: Optional[str]) -> Optional[tuple[str, str]]:
    if not text:
        return None
    topic = _TOPIC_RE.search(text)
    summary = _SUMMARY_RE.search(text)
    if not topic or not summary:
        return None
    title = topic.group(1).strip()[:CLUSTER_TITLE_MAX_CHARS]
    body = summary.group(1).strip()[:CLUSTER_SUMMARY_MAX_CHARS]
    if not title:
        return None
    return title, body
