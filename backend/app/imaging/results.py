"""Normalize terminal provider payloads into one canonical result shape."""

import mimetypes
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from app.core.exceptions import ProviderError
from app.integrations.midjourney import TaskStatus

DEFAULT_MIME_TYPE = "image/png"


@dataclass
class GenerationResult:
    """What the recorder needs from a finished job, independent of provider shape."""

    task_id: str | None
    image_url: str | None
    mime_type: str | None
    duration_ms: int
    model: str
    progress: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    strategy: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def guess_mime_type(url: str) -> str:
    if url.startswith("data:"):
        header = url[5:].split(",", 1)[0]
        return header.split(";", 1)[0] or DEFAULT_MIME_TYPE
    mime_type, _ = mimetypes.guess_type(urlparse(url).path)
    if mime_type and mime_type.startswith("image/"):
        return mime_type
    return DEFAULT_MIME_TYPE


def _first_image_url(status: TaskStatus) -> str | None:
    if status.image_urls:
        return status.image_urls[0]
    return status.image_url


def _usage(status: TaskStatus) -> tuple[int | None, int | None]:
    usage = status.raw.get("usage") or {}
    if not isinstance(usage, dict):
        return None, None
    prompt = usage.get("promptTokens", usage.get("prompt_tokens"))
    completion = usage.get("completionTokens", usage.get("completion_tokens"))
    return prompt, completion


def map_task_result(status: TaskStatus, model: str, elapsed_ms: int | None = None) -> GenerationResult:
    """Map a SUCCESS status to a GenerationResult.

    duration_ms prefers the provider's own timestamps (finishTime - submitTime)
    and falls back to the measured wall time.

    Raises:
        ProviderError: the job succeeded without any image URL
    """
    image_url = _first_image_url(status)
    if not image_url:
        raise ProviderError(f"No image URL in completed task {status.task_id}")

    if isinstance(status.submit_time, int) and isinstance(status.finish_time, int):
        duration_ms = status.finish_time - status.submit_time
    else:
        duration_ms = elapsed_ms or 0

    prompt_tokens, completion_tokens = _usage(status)

    return GenerationResult(
        task_id=status.task_id,
        image_url=image_url,
        mime_type=guess_mime_type(image_url),
        duration_ms=duration_ms,
        model=model,
        progress=status.progress,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        extra=dict(status.properties),
    )


def extract_prompts(status: TaskStatus) -> list[str]:
    """Prompts suggested by a describe job, one per paragraph of the provider text."""
    text = status.properties.get("finalPrompt") or status.prompt or ""
    return [block.strip() for block in text.split("\n\n") if block.strip()]
