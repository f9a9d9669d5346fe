"""PrototypeService: runs generation operations and serves prototype reads.

Follows the service pattern used across the backend:
- Constructor dependency injection (store, builder, pipeline, tracker)
- NotFoundError for missing prototypes, ValidationError for bad input
- Short-lived sessions owned by the store
"""

import math
from datetime import UTC, datetime
from uuid import UUID

import structlog
from redis.exceptions import RedisError

from app.core.exceptions import ConfigError, NotFoundError, ValidationError
from app.db.prototype_store import PrototypeFilters, PrototypeStore
from app.imaging.clock import CancellationToken
from app.imaging.job_tracker import JobTracker
from app.imaging.operations import (
    BlendOperation,
    GenerateOperation,
    IterationOperation,
    Operation,
    OperationBuilder,
    RegionEditOperation,
    UpscaleOperation,
    VariationOperation,
    describe_request,
)
from app.imaging.pipeline import GenerationPipeline
from app.imaging.recorder import ArtifactRecorder
from app.imaging.results import extract_prompts
from app.schemas.prototypes import (
    BlendDimensions,
    Pagination,
    Platform,
    PrototypeDetail,
    PrototypeResponse,
    StyleType,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"title", "description", "status", "platform", "style_type", "requirement_id", "project_id"})
MAX_PAGE_SIZE = 100


class PrototypeService:
    """Orchestrates prototype generation, lineage and retrieval.

    A service built without a pipeline serves reads, updates, deletes and
    metadata-only iterations; anything that needs the provider raises
    ConfigError.
    """

    def __init__(
        self,
        store: PrototypeStore,
        builder: OperationBuilder | None = None,
        pipeline: GenerationPipeline | None = None,
        tracker: JobTracker | None = None,
        recorder: ArtifactRecorder | None = None,
    ):
        self.store = store
        self.builder = builder or OperationBuilder()
        self.pipeline = pipeline
        self.tracker = tracker
        self.recorder = recorder or ArtifactRecorder(store)

    def _require_pipeline(self) -> GenerationPipeline:
        if self.pipeline is None:
            raise ConfigError("Image generation provider is not configured")
        return self.pipeline

    async def _load(self, prototype_id: UUID):
        prototype = await self.store.get(prototype_id)
        if prototype is None:
            raise NotFoundError("Prototype", prototype_id)
        return prototype

    async def run(self, operation: Operation, cancel: CancellationToken | None = None) -> PrototypeDetail:
        """Execute one operation end to end.

        Steps (strictly ordered):
        1. Validate caller fields
        2. Resolve the ancestor (derived operations)
        3. Validate the ancestor and build provider request(s)
        4. Submit, poll and map (skipped for metadata-only iterations)
        5. Allocate lineage and persist

        Nothing reaches the provider until steps 1-3 pass.
        """
        operation.validate_fields()

        ancestor = None
        if operation.derived:
            ancestor = await self._load(operation.parent_id)

        operation = await self.builder.prepare(operation)
        requests = self.builder.build(operation, ancestor)

        log = logger.bind(
            kind=operation.kind.value,
            parent_id=str(ancestor.id) if ancestor is not None else None,
        )

        result = None
        if requests:
            pipeline = self._require_pipeline()
            log.info("prototype_generation_started", strategies=len(requests))
            result = await pipeline.execute(requests, operation.model_name, operation.kind.value, cancel)

        detail = await self.recorder.record(operation, ancestor, result)
        if self.tracker is not None and detail.task_id:
            await self.tracker.safe_link_prototype(detail.task_id, detail.id)
        log.info(
            "prototype_generation_completed",
            prototype_id=str(detail.id),
            version=detail.version,
            task_id=detail.task_id,
            metadata_only=result is None,
        )
        return detail

    # ==================== OPERATIONS ====================

    async def generate(
        self,
        title: str | None,
        prompt_text: str | None,
        description: str | None = None,
        platform: str = Platform.WEB,
        style_type: str = StyleType.WIREFRAME,
        project_id: UUID | None = None,
        requirement_id: UUID | None = None,
        translate: bool = True,
        cancel: CancellationToken | None = None,
    ) -> PrototypeDetail:
        operation = GenerateOperation(
            title=title,
            prompt_text=prompt_text,
            description=description,
            platform=platform,
            style_type=style_type,
            project_id=project_id,
            requirement_id=requirement_id,
            translate=translate,
        )
        return await self.run(operation, cancel)

    async def upscale(self, prototype_id: UUID, index: int = 1, cancel: CancellationToken | None = None) -> PrototypeDetail:
        return await self.run(UpscaleOperation(prototype_id=prototype_id, index=index), cancel)

    async def vary(
        self,
        prototype_id: UUID,
        index: int = 1,
        custom_prompt: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> PrototypeDetail:
        operation = VariationOperation(prototype_id=prototype_id, index=index, custom_prompt=custom_prompt)
        return await self.run(operation, cancel)

    async def vary_region(
        self,
        prototype_id: UUID,
        mask_data_url: str | None,
        prompt: str | None,
        edit_region_data=None,
        cancel: CancellationToken | None = None,
    ) -> PrototypeDetail:
        operation = RegionEditOperation(
            prototype_id=prototype_id,
            mask_data_url=mask_data_url,
            prompt=prompt,
            edit_region_data=edit_region_data,
        )
        return await self.run(operation, cancel)

    async def iterate(
        self,
        parent_prototype_id: UUID | None,
        feedback: str | None,
        requirements: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> PrototypeDetail:
        operation = IterationOperation(
            parent_prototype_id=parent_prototype_id,
            feedback=feedback,
            requirements=requirements,
        )
        return await self.run(operation, cancel)

    async def blend(
        self,
        title: str | None,
        images: list[str | None],
        dimensions: str = BlendDimensions.SQUARE,
        description: str | None = None,
        project_id: UUID | None = None,
        requirement_id: UUID | None = None,
        cancel: CancellationToken | None = None,
    ) -> PrototypeDetail:
        operation = BlendOperation(
            title=title,
            images=tuple(images),
            dimensions=dimensions,
            description=description,
            project_id=project_id,
            requirement_id=requirement_id,
        )
        return await self.run(operation, cancel)

    async def describe(self, prototype_id: UUID, cancel: CancellationToken | None = None) -> list[str]:
        """Ask the provider for prompts matching a prototype's image and store them.

        The prompts land in analysis_result.extractedPrompts; nothing else on
        the prototype changes.
        """
        prototype = await self._load(prototype_id)
        if not prototype.image_url:
            raise ValidationError("Prototype has no image to describe", fields=["imageUrl"])

        pipeline = self._require_pipeline()
        status = await pipeline.describe(describe_request(prototype.image_url), cancel)
        prompts = extract_prompts(status)

        await self.store.merge_analysis(
            prototype_id,
            {"extractedPrompts": prompts, "extractedAt": datetime.now(UTC).isoformat()},
        )
        logger.info("prototype_described", prototype_id=str(prototype_id), prompt_count=len(prompts))
        return prompts

    # ==================== READS & WORKFLOW ====================

    async def get(self, prototype_id: UUID) -> PrototypeDetail:
        """Prototype with its parent summary and children ordered by version."""
        prototype = await self._load(prototype_id)
        parent = await self.store.get(prototype.parent_id) if prototype.parent_id else None
        children = await self.store.list_children(prototype_id)
        return PrototypeDetail.from_entity(prototype, parent=parent, children=children)

    async def list(
        self,
        filters: PrototypeFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PrototypeResponse], Pagination]:
        if page < 1:
            raise ValidationError("page must be at least 1", fields=["page"])
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", fields=["limit"])

        items, total = await self.store.list_page(filters, offset=(page - 1) * limit, limit=limit)
        pagination = Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit))
        return [PrototypeResponse.model_validate(item) for item in items], pagination

    async def update(self, prototype_id: UUID, fields: dict) -> PrototypeDetail:
        """Update workflow fields. Lineage and generation columns are not updatable."""
        rejected = sorted(set(fields) - UPDATABLE_FIELDS)
        if rejected:
            raise ValidationError(f"Fields cannot be updated: {', '.join(rejected)}", fields=rejected)
        if "title" in fields and not (fields["title"] or "").strip():
            raise ValidationError("title cannot be empty", fields=["title"])

        if fields:
            await self.store.update(prototype_id, fields)
            logger.info("prototype_updated", prototype_id=str(prototype_id), fields=sorted(fields))
        return await self.get(prototype_id)

    async def delete(self, prototype_id: UUID) -> None:
        """Delete a prototype without children (ConflictError otherwise)."""
        await self.store.delete(prototype_id)

    async def job_status(self, task_id: str) -> dict:
        if self.tracker is None:
            raise ConfigError("Job tracking is not available")
        try:
            job = await self.tracker.get_job(task_id)
        except RedisError as exc:
            raise ConfigError("Job tracking is unavailable") from exc
        if job is None:
            raise NotFoundError("Generation job", task_id)
        return job
