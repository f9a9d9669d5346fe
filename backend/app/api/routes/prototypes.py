"""Prototype API routes — generation, derivation, describe, retrieval and workflow endpoints."""

from collections.abc import AsyncIterator
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request

from app.core.exceptions import ConfigError
from app.db.base import get_session_factory
from app.db.prototype_store import PrototypeFilters, PrototypeStore
from app.db.redis import get_redis
from app.imaging.job_tracker import JobTracker
from app.imaging.operations import OperationBuilder
from app.imaging.pipeline import GenerationPipeline
from app.imaging.polling import PollingLoop
from app.integrations.midjourney import MidjourneyClient
from app.schemas.prototypes import (
    BlendRequest,
    DescribeData,
    DescribeResponse,
    GenerateRequest,
    GenerationJobResponse,
    IterateRequest,
    Platform,
    PrototypeEnvelope,
    PrototypeListResponse,
    PrototypeStatus,
    PrototypeUpdateRequest,
    StyleType,
    UpscaleRequest,
    VariationRequest,
    VaryRegionRequest,
)
from app.services.prototype_service import PrototypeService

logger = structlog.get_logger(__name__)

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies (override in tests via app.dependency_overrides)
# ──────────────────────────────────────────────────────────────────────────────


def get_prototype_store() -> PrototypeStore:
    return PrototypeStore(get_session_factory())


def get_job_tracker() -> JobTracker | None:
    """Job tracker, or None when Redis was never initialized."""
    redis = get_redis()
    return JobTracker(redis) if redis is not None else None


def get_prototype_service(
    store: PrototypeStore = Depends(get_prototype_store),
    tracker: JobTracker | None = Depends(get_job_tracker),
) -> PrototypeService:
    """Service for reads, workflow updates and metadata-only work (no provider)."""
    return PrototypeService(store, tracker=tracker)


async def get_generation_service(
    request: Request,
    store: PrototypeStore = Depends(get_prototype_store),
    tracker: JobTracker | None = Depends(get_job_tracker),
) -> AsyncIterator[PrototypeService]:
    """Service wired to the Midjourney provider.

    Without provider credentials the service is built with no pipeline:
    iterations fall back to metadata-only and lookups still 404, while
    operations that need the provider raise ConfigError (500).
    """
    try:
        client = MidjourneyClient(http_client=getattr(request.app.state, "http_client", None))
    except ConfigError as exc:
        logger.warning("provider_not_configured", error=str(exc))
        yield PrototypeService(store, builder=OperationBuilder(iteration_uses_provider=False), tracker=tracker)
        return

    try:
        pipeline = GenerationPipeline(client, PollingLoop(client), tracker)
        yield PrototypeService(store, pipeline=pipeline, tracker=tracker)
    finally:
        await client.aclose()


# ──────────────────────────────────────────────────────────────────────────────
# Generation & derivation
# ──────────────────────────────────────────────────────────────────────────────


@router.post("/generate", status_code=201, response_model=PrototypeEnvelope)
async def generate_prototype(
    body: GenerateRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    """Text-to-image generation of a new root prototype."""
    detail = await service.generate(
        title=body.title,
        prompt_text=body.prompt_text,
        description=body.description,
        platform=body.platform,
        style_type=body.style_type,
        project_id=body.project_id,
        requirement_id=body.requirement_id,
    )
    return PrototypeEnvelope(data=detail, message="Prototype generated successfully")


@router.post("/iterate", status_code=201, response_model=PrototypeEnvelope)
async def iterate_prototype(
    body: IterateRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    detail = await service.iterate(
        parent_prototype_id=body.parent_prototype_id,
        feedback=body.feedback,
        requirements=body.requirements,
    )
    return PrototypeEnvelope(data=detail, message="Prototype iteration created successfully")


@router.post("/blend", status_code=201, response_model=PrototypeEnvelope)
async def blend_prototype(
    body: BlendRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    """Blend a canvas drawing with a reference image into a new root prototype."""
    detail = await service.blend(
        title=body.title,
        images=[body.canvas_image, body.reference_image],
        dimensions=body.dimensions,
        description=body.description,
        project_id=body.project_id,
        requirement_id=body.requirement_id,
    )
    return PrototypeEnvelope(data=detail, message="Prototype blended successfully")


@router.post("/{prototype_id}/upscale", status_code=201, response_model=PrototypeEnvelope)
async def upscale_prototype(
    prototype_id: UUID,
    body: UpscaleRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    detail = await service.upscale(prototype_id, index=body.index)
    return PrototypeEnvelope(data=detail, message="Prototype upscaled successfully")


@router.post("/{prototype_id}/variation", status_code=201, response_model=PrototypeEnvelope)
async def vary_prototype(
    prototype_id: UUID,
    body: VariationRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    detail = await service.vary(prototype_id, index=body.index, custom_prompt=body.custom_prompt)
    return PrototypeEnvelope(data=detail, message="Variation created successfully")


@router.post("/{prototype_id}/vary-region", status_code=201, response_model=PrototypeEnvelope)
async def vary_prototype_region(
    prototype_id: UUID,
    body: VaryRegionRequest,
    service: PrototypeService = Depends(get_generation_service),
):
    detail = await service.vary_region(
        prototype_id,
        mask_data_url=body.mask_data_url,
        prompt=body.prompt,
        edit_region_data=body.edit_region_data,
    )
    return PrototypeEnvelope(data=detail, message="Region edited successfully")


@router.post("/{prototype_id}/describe", response_model=DescribeResponse)
async def describe_prototype(
    prototype_id: UUID,
    service: PrototypeService = Depends(get_generation_service),
):
    """Extract prompts from the prototype's image and store them on it."""
    prompts = await service.describe(prototype_id)
    return DescribeResponse(
        data=DescribeData(prompts=prompts, prototype_id=prototype_id),
        message="Prompts extracted successfully",
    )


# ──────────────────────────────────────────────────────────────────────────────
# Retrieval & workflow
# ──────────────────────────────────────────────────────────────────────────────


@router.get("/jobs/{task_id}", response_model=GenerationJobResponse)
async def get_generation_job(
    task_id: str,
    service: PrototypeService = Depends(get_prototype_service),
):
    """Tracked state of a provider job (kept for a day after submission)."""
    return GenerationJobResponse.model_validate(await service.job_status(task_id))


@router.get("", response_model=PrototypeListResponse)
async def list_prototypes(
    project_id: UUID | None = Query(None, alias="projectId"),
    requirement_id: UUID | None = Query(None, alias="requirementId"),
    status: PrototypeStatus | None = None,
    platform: Platform | None = None,
    style_type: StyleType | None = Query(None, alias="styleType"),
    page: int = 1,
    limit: int = 20,
    service: PrototypeService = Depends(get_prototype_service),
):
    filters = PrototypeFilters(
        project_id=project_id,
        requirement_id=requirement_id,
        status=status,
        platform=platform,
        style_type=style_type,
    )
    items, pagination = await service.list(filters, page=page, limit=limit)
    return PrototypeListResponse(data=items, pagination=pagination)


@router.get("/{prototype_id}", response_model=PrototypeEnvelope)
async def get_prototype(
    prototype_id: UUID,
    service: PrototypeService = Depends(get_prototype_service),
):
    """Prototype with its parent and children (ordered by version)."""
    return PrototypeEnvelope(data=await service.get(prototype_id))


@router.patch("/{prototype_id}", response_model=PrototypeEnvelope)
async def update_prototype(
    prototype_id: UUID,
    body: PrototypeUpdateRequest,
    service: PrototypeService = Depends(get_prototype_service),
):
    detail = await service.update(prototype_id, body.model_dump(exclude_unset=True))
    return PrototypeEnvelope(data=detail, message="Prototype updated successfully")


@router.delete("/{prototype_id}")
async def delete_prototype(
    prototype_id: UUID,
    service: PrototypeService = Depends(get_prototype_service),
):
    await service.delete(prototype_id)
    return {"success": True, "message": "Prototype deleted successfully"}
