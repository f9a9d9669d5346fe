"""ArtifactRecorder: persist the outcome of an operation as a new prototype."""

import uuid
from datetime import UTC, datetime

import structlog

from app.core.exceptions import NotFoundError, StorageError
from app.db.models.prototype import Prototype
from app.imaging.lineage import ROOT_VERSION, LineageManager
from app.imaging.operations import Operation
from app.imaging.results import GenerationResult
from app.schemas.prototypes import PrototypeDetail

logger = structlog.get_logger(__name__)


class ArtifactRecorder:
    """Turns (operation, ancestor, result) into a stored, hydrated prototype.

    Steps:
    1. Allocate the child version (derived operations only)
    2. Build the row from the operation's record fields
    3. Stamp lineage once (LineageManager.attach / attach_root)
    4. Insert and return it with its parent summary

    Once the provider has produced an image, any persistence failure is raised
    as StorageError carrying that image URL so the caller can still show it.
    """

    def __init__(self, store, lineage: LineageManager | None = None):
        self.store = store
        self.lineage = lineage or LineageManager(store)

    async def record(
        self,
        operation: Operation,
        ancestor: Prototype | None,
        result: GenerationResult | None,
        now: datetime | None = None,
    ) -> PrototypeDetail:
        now = now or datetime.now(UTC)
        try:
            if operation.derived:
                version = await self.lineage.next_version(ancestor.id)
            else:
                version = ROOT_VERSION

            prototype = Prototype(
                id=uuid.uuid4(),
                generation_type=operation.kind.value,
                child_count=0,
                created_at=now,
                updated_at=now,
                **operation.record_fields(ancestor, result, version),
            )
            if operation.derived:
                self.lineage.attach(prototype, ancestor.id, version)
            else:
                self.lineage.attach_root(prototype)

            saved = await self.store.create(prototype)
        except (StorageError, NotFoundError) as exc:
            if result is None:
                raise
            logger.error(
                "prototype_persist_failed",
                kind=operation.kind.value,
                task_id=result.task_id,
                image_url=result.image_url,
                error=str(exc),
            )
            raise StorageError(f"Image generated but could not be saved: {exc}", image_url=result.image_url) from exc

        logger.info(
            "prototype_recorded",
            prototype_id=str(saved.id),
            kind=operation.kind.value,
            parent_id=str(saved.parent_id) if saved.parent_id else None,
            version=saved.version,
            task_id=saved.task_id,
        )
        return PrototypeDetail.from_entity(saved, parent=ancestor if operation.derived else None)
