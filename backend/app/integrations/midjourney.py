"""Midjourney proxy API client: submit jobs and fetch their status.

The proxy exposes two primitives:
- POST {base}/mj/submit/{imagine|action|blend|describe} -> {code, description, result}
- GET  {base}/mj/task/{task_id}/fetch -> {status, progress, imageUrl(s), failReason, ...}

This client issues exactly one HTTP call per method and never retries;
the polling loop owns the retry budget.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx
import structlog

from app.core.config import Settings, get_settings
from app.core.exceptions import ConfigError, ProviderError

logger = structlog.get_logger(__name__)

SECRET_HEADER = "mj-api-secret"
BODY_EXCERPT_CHARS = 500

# Submit response codes: 1 = submitted, 21 = already exists, 22 = queued
ACCEPTED_SUBMIT_CODES = frozenset({1, 21, 22})


class TaskState(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


_PROVIDER_STATES: dict[str, TaskState] = {
    "NOT_START": TaskState.PENDING,
    "SUBMITTED": TaskState.PENDING,
    "PENDING": TaskState.PENDING,
    "IN_PROGRESS": TaskState.RUNNING,
    "PROCESSING": TaskState.RUNNING,
    "MODAL": TaskState.RUNNING,
    "SUCCESS": TaskState.SUCCESS,
    "FAILURE": TaskState.FAILURE,
    "FAILED": TaskState.FAILURE,
    "CANCEL": TaskState.FAILURE,
}


@dataclass(frozen=True)
class ProviderRequest:
    """One submission: the submit endpoint path and its JSON body.

    strategy names the variant when an operation offers fallbacks.
    """

    endpoint: str
    body: dict[str, Any]
    strategy: str | None = None


@dataclass
class TaskStatus:
    """Normalized view of a fetch-status response."""

    task_id: str
    state: TaskState
    raw_status: str | None = None
    progress: str | None = None
    image_url: str | None = None
    image_urls: list[str] = field(default_factory=list)
    prompt: str | None = None
    failure_reason: str | None = None
    submit_time: int | None = None
    start_time: int | None = None
    finish_time: int | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TaskState.SUCCESS, TaskState.FAILURE)

    @classmethod
    def from_payload(cls, task_id: str, payload: Any) -> "TaskStatus":
        if not isinstance(payload, dict):
            raise ProviderError(f"Malformed task status for {task_id}: expected an object")

        raw_status = payload.get("status")
        state = _PROVIDER_STATES.get(str(raw_status).upper(), TaskState.RUNNING) if raw_status else TaskState.PENDING

        image_urls = []
        for entry in payload.get("imageUrls") or []:
            url = entry.get("url") if isinstance(entry, dict) else entry
            if isinstance(url, str) and url:
                image_urls.append(url)

        return cls(
            task_id=str(payload.get("id") or task_id),
            state=state,
            raw_status=raw_status,
            progress=payload.get("progress"),
            image_url=payload.get("imageUrl") or None,
            image_urls=image_urls,
            prompt=payload.get("prompt") or payload.get("promptEn"),
            failure_reason=payload.get("failReason"),
            submit_time=payload.get("submitTime"),
            start_time=payload.get("startTime"),
            finish_time=payload.get("finishTime"),
            properties=payload.get("properties") or {},
            raw=payload,
        )


def _excerpt(text: str) -> str:
    return text[:BODY_EXCERPT_CHARS]


class MidjourneyClient:
    """Stateless adapter over the Midjourney proxy HTTP API.

    Credentials are resolved once at construction; a missing key or base URL
    raises ConfigError immediately. The underlying httpx.AsyncClient may be
    shared across concurrent requests.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.api_key = api_key or settings.midjourney_api_key
        self.base_url = (base_url or settings.midjourney_api_url or "").rstrip("/")
        if not self.api_key:
            raise ConfigError("MIDJOURNEY_API_KEY is not configured")
        if not self.base_url:
            raise ConfigError("MIDJOURNEY_API_URL is not configured")

        self.submit_timeout = settings.submit_timeout_seconds
        self.fetch_timeout = settings.fetch_timeout_seconds
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def submit(self, request: ProviderRequest) -> str:
        """Submit a job and return the provider task id.

        Raises:
            ProviderError: non-2xx, malformed JSON, or a rejected submission
        """
        url = f"{self.base_url}{request.endpoint}"
        payload = await self._send("POST", url, json=request.body, timeout=self.submit_timeout)

        if not isinstance(payload, dict):
            raise ProviderError(f"Malformed submit response from {request.endpoint}")

        code = payload.get("code")
        task_id = payload.get("result")
        if code not in ACCEPTED_SUBMIT_CODES or not task_id:
            raise ProviderError(
                f"Failed to submit task: {payload.get('description') or 'unknown reason'}",
                body=_excerpt(str(payload)),
            )

        logger.info("provider_task_submitted", endpoint=request.endpoint, task_id=task_id, strategy=request.strategy)
        return str(task_id)

    async def fetch_status(self, task_id: str) -> TaskStatus:
        """Fetch the current status of a task.

        Raises:
            ProviderError: non-2xx or malformed response
        """
        url = f"{self.base_url}/mj/task/{task_id}/fetch"
        payload = await self._send("GET", url, timeout=self.fetch_timeout)
        return TaskStatus.from_payload(task_id, payload)

    async def _send(self, method: str, url: str, **kwargs) -> Any:
        headers = {SECRET_HEADER: self.api_key, "Content-Type": "application/json"}
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Provider unreachable: {type(exc).__name__}: {exc}",
                transient=True,
            ) from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP error! status: {response.status_code}, body: {_excerpt(response.text)}",
                status_code=response.status_code,
                body=_excerpt(response.text),
                transient=response.status_code == 429 or response.status_code >= 500,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                "Malformed provider response: body is not JSON",
                status_code=response.status_code,
                body=_excerpt(response.text),
            ) from exc
