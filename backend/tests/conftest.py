"""Shared test fixtures for all test groups."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from app.core.exceptions import ConflictError, NotFoundError, StorageError
from app.db.models.prototype import Prototype
from app.imaging.clock import CancellationToken
from app.integrations.midjourney import TaskStatus

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock whose sleep returns immediately and advances virtual time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.sleeps.append(seconds)
        self.now += seconds
        if cancel is not None:
            cancel.raise_if_cancelled()


class FakeProvider:
    """Scripted stand-in for MidjourneyClient.

    statuses: fetch payloads (dicts) or exceptions, consumed in order; the last
        entry repeats once the script runs out
    submit_errors: one entry per submit call, an exception to raise or None
        to accept; calls beyond the list are accepted
    """

    def __init__(self, statuses=None, submit_errors=None):
        self.statuses = list(statuses or [success_payload()])
        self.submit_errors = list(submit_errors or [])
        self.submitted = []
        self.fetches: list[str] = []
        self._next_task = 0

    async def submit(self, request) -> str:
        self.submitted.append(request)
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if error is not None:
                raise error
        self._next_task += 1
        return f"task-{self._next_task}"

    async def fetch_status(self, task_id: str) -> TaskStatus:
        self.fetches.append(task_id)
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return TaskStatus.from_payload(task_id, item)

    async def aclose(self) -> None:
        pass


def success_payload(image_url="https://cdn.example.com/grid.png", **extra) -> dict:
    return {
        "id": extra.pop("id", "task-1"),
        "status": "SUCCESS",
        "progress": "100%",
        "imageUrl": image_url,
        "submitTime": 1_700_000_000_000,
        "finishTime": 1_700_000_042_000,
        **extra,
    }


def running_payload(progress="40%") -> dict:
    return {"status": "IN_PROGRESS", "progress": progress}


def make_prototype(**overrides) -> Prototype:
    """A stored-looking prototype with every column populated."""
    fields = {
        "id": uuid.uuid4(),
        "title": "Login screen",
        "description": "Mobile login",
        "generation_type": "text_to_image",
        "status": "draft",
        "platform": "web",
        "style_type": "wireframe",
        "prompt_text": "A clean login screen",
        "image_url": "https://cdn.example.com/root.png",
        "image_path": "task-root",
        "image_size": None,
        "image_mime_type": "image/png",
        "image_index": None,
        "source_image_url": None,
        "task_id": "task-root",
        "mask_image_url": None,
        "edit_region_data": None,
        "parent_id": None,
        "version": 1,
        "child_count": 0,
        "analysis_result": None,
        "suggestions": None,
        "identified_components": None,
        "model_used": "midjourney",
        "generation_time": 42_000,
        "prompt_tokens": None,
        "project_id": None,
        "requirement_id": None,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    fields.update(overrides)
    return Prototype(**fields)


class InMemoryPrototypeStore:
    """Dict-backed PrototypeStore with the same contract."""

    def __init__(self):
        self.rows: dict[uuid.UUID, Prototype] = {}
        self.fail_create: Exception | None = None
        self.created: list[Prototype] = []

    def add(self, prototype: Prototype) -> Prototype:
        self.rows[prototype.id] = prototype
        return prototype

    async def get(self, prototype_id):
        return self.rows.get(prototype_id)

    async def list_children(self, parent_id):
        children = [p for p in self.rows.values() if p.parent_id == parent_id]
        return sorted(children, key=lambda p: p.version)

    async def count_children(self, parent_id) -> int:
        return len([p for p in self.rows.values() if p.parent_id == parent_id])

    async def allocate_version(self, parent_id) -> int:
        parent = self.rows.get(parent_id)
        if parent is None:
            raise NotFoundError("Prototype", parent_id)
        parent.child_count = (parent.child_count or 0) + 1
        return parent.child_count

    async def create(self, prototype: Prototype) -> Prototype:
        if self.fail_create is not None:
            raise self.fail_create
        for row in self.rows.values():
            if row.parent_id is not None and row.parent_id == prototype.parent_id and row.version == prototype.version:
                raise StorageError("Prototype violates a constraint: uq_prototype_parent_version")
        # Keep insertion order visible through created_at, like a real clock
        prototype.created_at = BASE_TIME + timedelta(seconds=len(self.rows))
        prototype.updated_at = prototype.created_at
        self.rows[prototype.id] = prototype
        self.created.append(prototype)
        return prototype

    async def update(self, prototype_id, fields: dict):
        prototype = self.rows.get(prototype_id)
        if prototype is None:
            raise NotFoundError("Prototype", prototype_id)
        for name, value in fields.items():
            setattr(prototype, name, value)
        return prototype

    async def merge_analysis(self, prototype_id, analysis: dict):
        prototype = self.rows.get(prototype_id)
        if prototype is None:
            raise NotFoundError("Prototype", prototype_id)
        prototype.analysis_result = {**(prototype.analysis_result or {}), **analysis}
        return prototype

    async def list_page(self, filters=None, offset=0, limit=20):
        items = list(self.rows.values())
        if filters is not None:
            for name in ("project_id", "requirement_id", "status", "platform", "style_type"):
                value = getattr(filters, name)
                if value is not None:
                    items = [p for p in items if getattr(p, name) == value]
        items.sort(key=lambda p: p.created_at, reverse=True)
        return items[offset : offset + limit], len(items)

    async def delete(self, prototype_id) -> None:
        if prototype_id not in self.rows:
            raise NotFoundError("Prototype", prototype_id)
        children = await self.count_children(prototype_id)
        if children:
            raise ConflictError(
                f"Cannot delete prototype with {children} child version(s)",
                children_count=children,
            )
        del self.rows[prototype_id]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryPrototypeStore()


@pytest.fixture
def root_prototype(store):
    return store.add(make_prototype())
