"""API-specific test fixtures."""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient

from app.api.routes import api_router
from app.api.routes.prototypes import get_generation_service, get_prototype_service
from app.core.config import get_settings
from app.core.exceptions import PrototypeStudioError
from app.imaging.clock import CancellationToken
from app.imaging.operations import OperationBuilder
from app.imaging.pipeline import GenerationPipeline
from app.imaging.polling import PollingLoop
from app.main import (
    generic_exception_handler,
    http_exception_handler,
    request_validation_handler,
    studio_exception_handler,
)
from app.services.prototype_service import PrototypeService
from tests.conftest import FakeProvider


class ImmediateClock:
    """Clock for route tests: no real waiting."""

    def monotonic(self) -> float:
        return 0.0

    async def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()


class StubTracker:
    def __init__(self):
        self.jobs: dict[str, dict] = {}
        self.links: dict[str, str] = {}

    async def get_job(self, task_id: str) -> dict | None:
        return self.jobs.get(task_id)

    async def safe_link_prototype(self, task_id: str, prototype_id) -> None:
        self.links[task_id] = str(prototype_id)


def build_test_app() -> FastAPI:
    """Routes and exception handlers without the production lifespan.

    No database, Redis or provider connection is opened.
    """
    settings = get_settings()

    app = FastAPI(title=settings.app_name, description="Prototype Studio - Test Client", version="0.1.0")

    # Exception handlers (needed for status mapping and debug_id testing)
    app.exception_handler(PrototypeStudioError)(studio_exception_handler)
    app.exception_handler(RequestValidationError)(request_validation_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def tracker():
    return StubTracker()


@pytest.fixture
def api_client(store, provider, tracker):
    """FastAPI test client with in-memory store and scripted provider."""
    app = build_test_app()

    builder = OperationBuilder(model_version="7", iteration_uses_provider=True)
    pipeline = GenerationPipeline(
        provider,
        PollingLoop(provider, clock=ImmediateClock(), interval=10.0, max_attempts=3),
    )

    app.dependency_overrides[get_prototype_service] = lambda: PrototypeService(store, builder=builder, tracker=tracker)
    app.dependency_overrides[get_generation_service] = lambda: PrototypeService(
        store, builder=builder, pipeline=pipeline, tracker=tracker
    )

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client

    app.dependency_overrides.clear()
