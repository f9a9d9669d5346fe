"""Polling loop: drive a submitted provider job to a terminal outcome.

The loop is the only place that turns "still working" into "gave up":
1. Wait one interval (providers need processing latency before the first check)
2. Fetch status; SUCCESS returns, FAILURE raises JobFailedError
3. Otherwise wait a fixed interval and fetch again
4. After max_attempts non-terminal fetches raise JobTimeoutError

Transient provider errors (network, 429, 5xx) count as non-terminal fetches
and consume the same budget. Other provider errors propagate immediately.
"""

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from app.core.config import get_settings
from app.core.exceptions import JobFailedError, JobTimeoutError, ProviderError
from app.imaging.clock import CancellationToken, Clock, MonotonicClock
from app.integrations.midjourney import MidjourneyClient, TaskState, TaskStatus

logger = structlog.get_logger(__name__)


def _still_working(status: TaskStatus) -> bool:
    return not status.is_terminal


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


class PollingLoop:
    """Bounded fixed-interval polling over MidjourneyClient.fetch_status.

    Args:
        client: Provider client used for status fetches
        clock: Injected clock (MonotonicClock by default)
        interval: Seconds between checks (settings.poll_interval_seconds by default)
        max_attempts: Status fetches before giving up (settings.poll_max_attempts by default)
    """

    def __init__(
        self,
        client: MidjourneyClient,
        clock: Clock | None = None,
        interval: float | None = None,
        max_attempts: int | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.clock = clock or MonotonicClock()
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.max_attempts = settings.poll_max_attempts if max_attempts is None else max_attempts

    async def wait_for(
        self,
        task_id: str,
        interval: float | None = None,
        max_attempts: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> TaskStatus:
        """Block (cooperatively) until the task succeeds, fails, or the budget runs out.

        Returns:
            The terminal SUCCESS status, exactly as fetched

        Raises:
            JobFailedError: provider reported FAILURE (failReason kept verbatim)
            JobTimeoutError: max_attempts fetches without a terminal status
            JobCancelledError: cancel fired during a wait
            ProviderError: non-transient fetch failure
        """
        interval = self.interval if interval is None else interval
        max_attempts = self.max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        cancel = cancel or CancellationToken()
        started = self.clock.monotonic()

        async def _sleep(seconds: float) -> None:
            await self.clock.sleep(seconds, cancel)

        async def _check() -> TaskStatus:
            cancel.raise_if_cancelled()
            status = await self.client.fetch_status(task_id)
            logger.debug(
                "provider_task_polled",
                task_id=task_id,
                state=status.state.value,
                progress=status.progress,
            )
            return status

        def _give_up(retry_state: RetryCallState) -> TaskStatus:
            waited = self.clock.monotonic() - started
            logger.warning("provider_task_timeout", task_id=task_id, attempts=retry_state.attempt_number, waited=waited)
            last_error = retry_state.outcome.exception() if retry_state.outcome else None
            raise JobTimeoutError(task_id, retry_state.attempt_number, waited) from last_error

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(interval),
            retry=retry_if_result(_still_working) | retry_if_exception(_is_transient),
            sleep=_sleep,
            retry_error_callback=_give_up,
            before_sleep=lambda rs: logger.debug(
                "provider_task_waiting",
                task_id=task_id,
                attempt=rs.attempt_number,
                transient_error=str(rs.outcome.exception()) if rs.outcome and rs.outcome.failed else None,
            ),
        )

        await _sleep(interval)
        status = await retrying(_check)

        if status.state is TaskState.FAILURE:
            logger.warning("provider_task_failed", task_id=task_id, reason=status.failure_reason)
            raise JobFailedError(task_id, status.failure_reason)

        logger.info(
            "provider_task_succeeded",
            task_id=task_id,
            waited=self.clock.monotonic() - started,
        )
        return status
