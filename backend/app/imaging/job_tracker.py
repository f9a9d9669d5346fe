"""Generation job tracking in Redis.

One hash per provider task (generation:{task_id}) with a TTL, plus a Pub/Sub
channel (generation:{task_id}:events) announcing every status change. The
record is informational: the request that submitted the job is the one that
waits for it, so tracker failures are logged and never fail the generation.
"""

import json
from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import get_settings

logger = structlog.get_logger(__name__)


class GenerationJobStatus(StrEnum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        GenerationJobStatus.SUCCEEDED,
        GenerationJobStatus.FAILED,
        GenerationJobStatus.TIMED_OUT,
        GenerationJobStatus.CANCELLED,
    }
)

STATUS_EVENT = "generation.status.changed"


def job_key(task_id: str) -> str:
    return f"generation:{task_id}"


def events_channel(task_id: str) -> str:
    return f"generation:{task_id}:events"


class JobTracker:
    """Manages generation job state transitions with validation."""

    TRANSITIONS = {
        GenerationJobStatus.SUBMITTED: [
            GenerationJobStatus.POLLING,
            GenerationJobStatus.FAILED,
            GenerationJobStatus.CANCELLED,
        ],
        GenerationJobStatus.POLLING: [
            GenerationJobStatus.SUCCEEDED,
            GenerationJobStatus.FAILED,
            GenerationJobStatus.TIMED_OUT,
            GenerationJobStatus.CANCELLED,
        ],
        GenerationJobStatus.SUCCEEDED: [],
        GenerationJobStatus.FAILED: [],
        GenerationJobStatus.TIMED_OUT: [],
        GenerationJobStatus.CANCELLED: [],
    }

    def __init__(self, redis: Redis, ttl_seconds: int | None = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or get_settings().job_record_ttl_seconds

    async def create_job(self, task_id: str, metadata: dict, now: datetime | None = None) -> None:
        """Record a freshly submitted task with SUBMITTED status.

        Args:
            task_id: Provider task id
            metadata: kind, endpoint, strategy (None values are dropped)
            now: Current time (for deterministic testing)
        """
        now = now or datetime.now(UTC)
        mapping = {
            "task_id": task_id,
            "status": GenerationJobStatus.SUBMITTED.value,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            **{key: str(value) for key, value in metadata.items() if value is not None},
        }
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(job_key(task_id), mapping=mapping)
            pipe.expire(job_key(task_id), self.ttl_seconds)
            await pipe.execute()

    async def transition(
        self,
        task_id: str,
        new_status: GenerationJobStatus,
        message: str = "",
        now: datetime | None = None,
        **fields,
    ) -> bool:
        """Move the job to new_status if allowed. Publishes an event on success.

        Returns:
            True if transition succeeded, False if invalid, job not found or
            the stored status is unreadable
        """
        now = now or datetime.now(UTC)

        current = await self.get_status(task_id)
        if current is None:
            return False

        if new_status not in self.TRANSITIONS[current]:
            return False

        mapping = {
            "status": new_status.value,
            "status_message": message,
            "updated_at": now.isoformat(),
            **{key: str(value) for key, value in fields.items() if value is not None},
        }
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(job_key(task_id), mapping=mapping)
            pipe.expire(job_key(task_id), self.ttl_seconds)
            await pipe.execute()

        await self.redis.publish(
            events_channel(task_id),
            json.dumps(
                {
                    "type": STATUS_EVENT,
                    "task_id": task_id,
                    "status": new_status.value,
                    "message": message,
                    "timestamp": now.isoformat(),
                }
            ),
        )
        return True

    async def link_prototype(self, task_id: str, prototype_id: UUID) -> bool:
        """Record which prototype a finished job produced.

        Only terminal jobs are linked; a job still in flight has no prototype.
        """
        status = await self.get_status(task_id)
        if status not in TERMINAL_STATUSES:
            return False
        await self.redis.hset(job_key(task_id), "prototype_id", str(prototype_id))
        return True

    async def get_status(self, task_id: str) -> GenerationJobStatus | None:
        """Stored status, or None when the job is missing or its status is unknown."""
        status = await self.redis.hget(job_key(task_id), "status")
        if status is None:
            return None
        try:
            return GenerationJobStatus(status)
        except ValueError:
            logger.warning("job_record_unreadable", task_id=task_id, status=status)
            return None

    async def get_job(self, task_id: str) -> dict | None:
        data = await self.redis.hgetall(job_key(task_id))
        return data if data else None

    async def safe_create(self, task_id: str, metadata: dict) -> None:
        try:
            await self.create_job(task_id, metadata)
        except RedisError as exc:
            logger.warning("job_tracker_unavailable", task_id=task_id, op="create", error=str(exc))

    async def safe_transition(self, task_id: str, new_status: GenerationJobStatus, message: str = "", **fields) -> None:
        try:
            applied = await self.transition(task_id, new_status, message, **fields)
        except RedisError as exc:
            logger.warning("job_tracker_unavailable", task_id=task_id, op="transition", error=str(exc))
            return
        if not applied:
            logger.debug("job_transition_skipped", task_id=task_id, status=new_status.value)

    async def safe_link_prototype(self, task_id: str, prototype_id: UUID) -> None:
        try:
            await self.link_prototype(task_id, prototype_id)
        except RedisError as exc:
            logger.warning("job_tracker_unavailable", task_id=task_id, op="link", error=str(exc))
