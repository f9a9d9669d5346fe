"""Tests for the polling loop: budget, timing, failure and cancellation."""

import pytest

from app.core.exceptions import JobCancelledError, JobFailedError, JobTimeoutError, ProviderError
from app.imaging.clock import CancellationToken
from app.imaging.polling import PollingLoop
from app.integrations.midjourney import TaskState
from tests.conftest import FakeProvider, running_payload, success_payload

pytestmark = pytest.mark.unit


def make_loop(provider, clock, interval=10.0, max_attempts=60) -> PollingLoop:
    return PollingLoop(provider, clock=clock, interval=interval, max_attempts=max_attempts)


async def test_success_on_third_poll_waits_three_intervals(fake_clock):
    provider = FakeProvider(statuses=[running_payload(), running_payload("80%"), success_payload()])
    loop = make_loop(provider, fake_clock, interval=10.0)

    status = await loop.wait_for("task-1")

    assert status.state is TaskState.SUCCESS
    assert len(provider.fetches) == 3
    assert fake_clock.sleeps == [10.0, 10.0, 10.0]
    assert fake_clock.now == pytest.approx(30.0)


async def test_first_check_happens_after_one_interval(fake_clock):
    provider = FakeProvider(statuses=[success_payload()])

    await make_loop(provider, fake_clock, interval=5.0).wait_for("task-1")

    assert fake_clock.sleeps == [5.0]
    assert provider.fetches == ["task-1"]


async def test_timeout_after_max_attempts_non_terminal_polls(fake_clock):
    provider = FakeProvider(statuses=[running_payload()])
    loop = make_loop(provider, fake_clock, interval=10.0, max_attempts=3)

    with pytest.raises(JobTimeoutError) as exc_info:
        await loop.wait_for("task-7")

    assert len(provider.fetches) == 3
    assert exc_info.value.task_id == "task-7"
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value, TimeoutError)
    assert fake_clock.sleeps == [10.0, 10.0, 10.0]


async def test_failure_reason_propagates_verbatim(fake_clock):
    provider = FakeProvider(statuses=[running_payload(), {"status": "FAILURE", "failReason": "Banned prompt: xyz"}])

    with pytest.raises(JobFailedError) as exc_info:
        await make_loop(provider, fake_clock).wait_for("task-1")

    assert exc_info.value.failure_reason == "Banned prompt: xyz"
    assert str(exc_info.value) == "Task failed: Banned prompt: xyz"
    assert len(provider.fetches) == 2


async def test_failure_without_reason_uses_placeholder(fake_clock):
    provider = FakeProvider(statuses=[{"status": "FAILURE"}])

    with pytest.raises(JobFailedError, match="Unknown error"):
        await make_loop(provider, fake_clock).wait_for("task-1")


async def test_transient_errors_consume_budget_then_recover(fake_clock):
    provider = FakeProvider(
        statuses=[
            ProviderError("HTTP error! status: 503", status_code=503, transient=True),
            running_payload(),
            success_payload(),
        ]
    )

    status = await make_loop(provider, fake_clock, max_attempts=3).wait_for("task-1")

    assert status.state is TaskState.SUCCESS
    assert len(provider.fetches) == 3


async def test_transient_errors_alone_exhaust_budget(fake_clock):
    error = ProviderError("Provider unreachable", transient=True)
    provider = FakeProvider(statuses=[error])

    with pytest.raises(JobTimeoutError) as exc_info:
        await make_loop(provider, fake_clock, max_attempts=2).wait_for("task-1")

    assert len(provider.fetches) == 2
    assert exc_info.value.__cause__ is error


async def test_non_transient_error_propagates_immediately(fake_clock):
    provider = FakeProvider(statuses=[ProviderError("HTTP error! status: 404", status_code=404)])

    with pytest.raises(ProviderError, match="404"):
        await make_loop(provider, fake_clock).wait_for("task-1")

    assert len(provider.fetches) == 1


async def test_cancelled_token_stops_before_first_fetch(fake_clock):
    provider = FakeProvider(statuses=[running_payload()])
    cancel = CancellationToken()
    cancel.cancel("user navigated away")

    with pytest.raises(JobCancelledError, match="user navigated away"):
        await make_loop(provider, fake_clock).wait_for("task-1", cancel=cancel)

    assert provider.fetches == []


async def test_cancel_during_polling_stops_the_loop(fake_clock):
    cancel = CancellationToken()

    class CancellingProvider(FakeProvider):
        async def fetch_status(self, task_id):
            status = await super().fetch_status(task_id)
            if len(self.fetches) == 2:
                cancel.cancel()
            return status

    provider = CancellingProvider(statuses=[running_payload()])

    with pytest.raises(JobCancelledError):
        await make_loop(provider, fake_clock).wait_for("task-1", cancel=cancel)

    assert len(provider.fetches) == 2


async def test_per_call_budget_overrides_defaults(fake_clock):
    provider = FakeProvider(statuses=[running_payload()])
    loop = make_loop(provider, fake_clock, interval=10.0, max_attempts=60)

    with pytest.raises(JobTimeoutError):
        await loop.wait_for("task-1", interval=1.0, max_attempts=2)

    assert fake_clock.sleeps == [1.0, 1.0]


async def test_zero_attempts_is_rejected(fake_clock):
    with pytest.raises(ValueError):
        await make_loop(FakeProvider(), fake_clock).wait_for("task-1", max_attempts=0)
