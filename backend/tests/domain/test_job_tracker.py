"""Tests for the Redis-backed generation job tracker."""

import json
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis
from redis.exceptions import ConnectionError as RedisConnectionError

from app.imaging.job_tracker import GenerationJobStatus, JobTracker, events_channel, job_key

pytestmark = pytest.mark.unit

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def tracker(redis):
    return JobTracker(redis, ttl_seconds=3600)


async def test_create_job_records_submission(tracker, redis):
    await tracker.create_job("t-1", {"kind": "upscale", "endpoint": "/mj/submit/action", "strategy": None}, now=NOW)

    job = await tracker.get_job("t-1")
    assert job["status"] == "submitted"
    assert job["kind"] == "upscale"
    assert job["created_at"] == NOW.isoformat()
    assert "strategy" not in job
    assert 0 < await redis.ttl(job_key("t-1")) <= 3600


async def test_happy_path_transitions(tracker):
    await tracker.create_job("t-1", {"kind": "text_to_image"})

    assert await tracker.transition("t-1", GenerationJobStatus.POLLING) is True
    assert await tracker.transition("t-1", GenerationJobStatus.SUCCEEDED, "Image ready", image_url="https://x/y.png")

    job = await tracker.get_job("t-1")
    assert job["status"] == "succeeded"
    assert job["status_message"] == "Image ready"
    assert job["image_url"] == "https://x/y.png"


async def test_terminal_state_cannot_be_left(tracker):
    await tracker.create_job("t-1", {})
    await tracker.transition("t-1", GenerationJobStatus.POLLING)
    await tracker.transition("t-1", GenerationJobStatus.FAILED, "Banned prompt")

    assert await tracker.transition("t-1", GenerationJobStatus.SUCCEEDED) is False
    assert await tracker.get_status("t-1") == GenerationJobStatus.FAILED


async def test_submitted_cannot_jump_to_succeeded(tracker):
    await tracker.create_job("t-1", {})
    assert await tracker.transition("t-1", GenerationJobStatus.SUCCEEDED) is False


async def test_unknown_job(tracker):
    assert await tracker.transition("missing", GenerationJobStatus.POLLING) is False
    assert await tracker.get_status("missing") is None
    assert await tracker.get_job("missing") is None


async def test_transition_publishes_event(tracker, redis):
    await tracker.create_job("t-1", {})
    pubsub = redis.pubsub()
    await pubsub.subscribe(events_channel("t-1"))
    await pubsub.get_message(timeout=1.0)  # subscribe confirmation

    await tracker.transition("t-1", GenerationJobStatus.POLLING, "Waiting", now=NOW)

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
    event = json.loads(message["data"])
    assert event == {
        "type": "generation.status.changed",
        "task_id": "t-1",
        "status": "polling",
        "message": "Waiting",
        "timestamp": NOW.isoformat(),
    }
    await pubsub.aclose()


async def test_safe_methods_swallow_redis_outages():
    broken = MagicMock()
    broken.hget = AsyncMock(side_effect=RedisConnectionError("redis down"))
    broken.pipeline.side_effect = RedisConnectionError("redis down")
    tracker = JobTracker(broken, ttl_seconds=60)

    await tracker.safe_create("t-1", {"kind": "upscale"})
    await tracker.safe_transition("t-1", GenerationJobStatus.POLLING)
    await tracker.safe_link_prototype("t-1", uuid.uuid4())


async def test_unreadable_status_is_skipped_not_raised(tracker, redis):
    await tracker.create_job("t-1", {"kind": "upscale"})
    await redis.hset(job_key("t-1"), "status", "exploded")

    assert await tracker.get_status("t-1") is None
    assert await tracker.transition("t-1", GenerationJobStatus.SUCCEEDED) is False
    await tracker.safe_transition("t-1", GenerationJobStatus.SUCCEEDED, "Image ready")

    assert (await tracker.get_job("t-1"))["status"] == "exploded"


async def test_link_prototype_only_after_job_finishes(tracker):
    prototype_id = uuid.uuid4()
    await tracker.create_job("t-1", {"kind": "upscale"})
    await tracker.transition("t-1", GenerationJobStatus.POLLING)

    assert await tracker.link_prototype("t-1", prototype_id) is False
    assert "prototype_id" not in await tracker.get_job("t-1")

    await tracker.transition("t-1", GenerationJobStatus.SUCCEEDED)
    assert await tracker.link_prototype("t-1", prototype_id) is True
    assert (await tracker.get_job("t-1"))["prototype_id"] == str(prototype_id)
    assert await tracker.link_prototype("missing", prototype_id) is False
