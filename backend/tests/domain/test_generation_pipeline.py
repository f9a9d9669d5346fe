"""Tests for submit-with-fallback, tracking and result mapping in the pipeline."""

import pytest
from fakeredis import FakeAsyncRedis

from app.core.exceptions import JobFailedError, JobTimeoutError, ProviderError
from app.imaging.job_tracker import JobTracker
from app.imaging.pipeline import GenerationPipeline
from app.imaging.polling import PollingLoop
from app.integrations.midjourney import ProviderRequest
from tests.conftest import FakeProvider, running_payload, success_payload

pytestmark = pytest.mark.unit

FALLBACKS = [
    ProviderRequest("/mj/submit/imagine", {"n": 1}, strategy="first"),
    ProviderRequest("/mj/submit/imagine", {"n": 2}, strategy="second"),
    ProviderRequest("/mj/submit/imagine", {"n": 3}, strategy="third"),
]


@pytest.fixture
async def tracker():
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield JobTracker(fake_redis, ttl_seconds=3600)
    await fake_redis.flushall()
    await fake_redis.aclose()


def make_pipeline(provider, clock, tracker=None, max_attempts=5) -> GenerationPipeline:
    return GenerationPipeline(provider, PollingLoop(provider, clock=clock, interval=10.0, max_attempts=max_attempts), tracker)


async def test_execute_maps_result_and_tracks_success(fake_clock, tracker):
    provider = FakeProvider(statuses=[running_payload(), success_payload()])

    result = await make_pipeline(provider, fake_clock, tracker).execute(FALLBACKS[:1], "midjourney", "text_to_image")

    assert result.task_id == "task-1"
    assert result.image_url == "https://cdn.example.com/grid.png"
    assert result.duration_ms == 42_000
    assert result.strategy == "first"
    job = await tracker.get_job("task-1")
    assert job["status"] == "succeeded"
    assert job["kind"] == "text_to_image"


async def test_fallback_moves_to_next_strategy(fake_clock):
    provider = FakeProvider(submit_errors=[ProviderError("rejected"), None])

    result = await make_pipeline(provider, fake_clock).execute(FALLBACKS, "midjourney-inpaint", "vary_region")

    assert [r.strategy for r in provider.submitted] == ["first", "second"]
    assert result.strategy == "second"


async def test_all_strategies_rejected(fake_clock):
    provider = FakeProvider(submit_errors=[ProviderError("a"), ProviderError("b"), ProviderError("last one")])

    with pytest.raises(ProviderError, match="All submission strategies failed. Last error: last one"):
        await make_pipeline(provider, fake_clock).execute(FALLBACKS, "midjourney-inpaint", "vary_region")

    assert provider.fetches == []


async def test_single_request_keeps_its_own_error(fake_clock):
    error = ProviderError("Failed to submit task: Banned prompt")
    provider = FakeProvider(submit_errors=[error])

    with pytest.raises(ProviderError) as exc_info:
        await make_pipeline(provider, fake_clock).execute(FALLBACKS[:1], "midjourney", "upscale")

    assert exc_info.value is error


async def test_failed_job_is_tracked_with_reason(fake_clock, tracker):
    provider = FakeProvider(statuses=[{"status": "FAILURE", "failReason": "Banned prompt: xyz"}])

    with pytest.raises(JobFailedError):
        await make_pipeline(provider, fake_clock, tracker).execute(FALLBACKS[:1], "midjourney", "upscale")

    job = await tracker.get_job("task-1")
    assert job["status"] == "failed"
    assert job["status_message"] == "Banned prompt: xyz"


async def test_timeout_is_tracked(fake_clock, tracker):
    provider = FakeProvider(statuses=[running_payload()])

    with pytest.raises(JobTimeoutError):
        await make_pipeline(provider, fake_clock, tracker, max_attempts=2).execute(FALLBACKS[:1], "midjourney", "upscale")

    assert (await tracker.get_job("task-1"))["status"] == "timed_out"


async def test_success_without_image_fails_the_job(fake_clock, tracker):
    provider = FakeProvider(statuses=[{"status": "SUCCESS", "imageUrl": ""}])

    with pytest.raises(ProviderError, match="No image URL"):
        await make_pipeline(provider, fake_clock, tracker).execute(FALLBACKS[:1], "midjourney", "upscale")

    assert (await tracker.get_job("task-1"))["status"] == "failed"


async def test_describe_returns_terminal_status(fake_clock):
    provider = FakeProvider(statuses=[{"status": "SUCCESS", "prompt": "one\n\ntwo"}])

    status = await make_pipeline(provider, fake_clock).describe(ProviderRequest("/mj/submit/describe", {}))

    assert status.prompt == "one\n\ntwo"


async def test_empty_request_list_is_rejected(fake_clock):
    with pytest.raises(ValueError):
        await make_pipeline(FakeProvider(), fake_clock).execute([], "midjourney", "upscale")
