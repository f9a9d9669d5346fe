"""GenerationPipeline: submit -> track -> poll -> map for one provider job."""

import asyncio

import structlog

from app.core.exceptions import (
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    ProviderError,
)
from app.imaging.clock import CancellationToken
from app.imaging.job_tracker import GenerationJobStatus, JobTracker
from app.imaging.polling import PollingLoop
from app.imaging.results import GenerationResult, map_task_result
from app.integrations.midjourney import MidjourneyClient, ProviderRequest, TaskStatus

logger = structlog.get_logger(__name__)

_FAILURE_STATUSES: tuple[tuple[type[BaseException], GenerationJobStatus], ...] = (
    (JobTimeoutError, GenerationJobStatus.TIMED_OUT),
    (JobCancelledError, GenerationJobStatus.CANCELLED),
    (asyncio.CancelledError, GenerationJobStatus.CANCELLED),
    (ProviderError, GenerationJobStatus.FAILED),
)


class GenerationPipeline:
    """Runs provider requests to a terminal result.

    Args:
        client: Provider client used for submissions
        poller: Polling loop over the same client
        tracker: Optional Redis job tracker; None disables tracking
    """

    def __init__(self, client: MidjourneyClient, poller: PollingLoop, tracker: JobTracker | None = None):
        self.client = client
        self.poller = poller
        self.tracker = tracker

    async def submit(
        self,
        requests: list[ProviderRequest],
        cancel: CancellationToken | None = None,
    ) -> tuple[str, ProviderRequest]:
        """Submit requests in order until the provider accepts one.

        Returns:
            (task_id, accepted request)

        Raises:
            ProviderError: every request was rejected. A single request keeps
                its own error; several report the last one.
        """
        if not requests:
            raise ValueError("At least one provider request is required")

        last_error: ProviderError | None = None
        for request in requests:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                task_id = await self.client.submit(request)
                return task_id, request
            except ProviderError as exc:
                last_error = exc
                logger.warning(
                    "provider_submit_rejected",
                    endpoint=request.endpoint,
                    strategy=request.strategy,
                    error=str(exc),
                )

        if len(requests) == 1:
            raise last_error
        raise ProviderError(f"All submission strategies failed. Last error: {last_error}") from last_error

    async def execute(
        self,
        requests: list[ProviderRequest],
        model: str,
        kind: str,
        cancel: CancellationToken | None = None,
    ) -> GenerationResult:
        """Submit (with fallbacks), wait for the job and map its terminal payload.

        Raises:
            ProviderError: rejected submission, malformed payload or success without image
            JobFailedError: provider reported FAILURE
            JobTimeoutError: polling budget exhausted
            JobCancelledError: cancelled while waiting
        """
        task_id, accepted = await self.submit(requests, cancel)
        started = self.poller.clock.monotonic()

        status = await self._wait(task_id, kind, accepted, cancel)
        try:
            elapsed_ms = int((self.poller.clock.monotonic() - started) * 1000)
            result = map_task_result(status, model, elapsed_ms=elapsed_ms)
        except ProviderError as exc:
            await self._track_failure(task_id, exc)
            raise
        result.strategy = accepted.strategy

        if self.tracker is not None:
            await self.tracker.safe_transition(
                task_id, GenerationJobStatus.SUCCEEDED, "Image ready", image_url=result.image_url
            )
        return result

    async def describe(self, request: ProviderRequest, cancel: CancellationToken | None = None) -> TaskStatus:
        """Run a describe job and return its terminal status (no image expected)."""
        task_id, accepted = await self.submit([request], cancel)
        status = await self._wait(task_id, "describe", accepted, cancel)
        if self.tracker is not None:
            await self.tracker.safe_transition(task_id, GenerationJobStatus.SUCCEEDED, "Prompts extracted")
        return status

    async def _wait(
        self,
        task_id: str,
        kind: str,
        request: ProviderRequest,
        cancel: CancellationToken | None,
    ) -> TaskStatus:
        if self.tracker is not None:
            await self.tracker.safe_create(
                task_id, {"kind": kind, "endpoint": request.endpoint, "strategy": request.strategy}
            )
            await self.tracker.safe_transition(task_id, GenerationJobStatus.POLLING, "Waiting for provider")

        try:
            return await self.poller.wait_for(task_id, cancel=cancel)
        except (ProviderError, JobTimeoutError, JobCancelledError, asyncio.CancelledError) as exc:
            await self._track_failure(task_id, exc)
            raise

    async def _track_failure(self, task_id: str, exc: BaseException) -> None:
        if self.tracker is None:
            return
        for error_type, status in _FAILURE_STATUSES:
            if isinstance(exc, error_type):
                message = exc.failure_reason if isinstance(exc, JobFailedError) else str(exc)
                await self.tracker.safe_transition(task_id, status, message or "")
                return
