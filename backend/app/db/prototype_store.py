"""PrototypeStore: async repository over the prototypes table.

Every method opens its own short-lived session from the factory, so a store
instance can be shared by concurrent requests.
"""

from dataclasses import dataclass
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from app.core.exceptions import ConflictError, NotFoundError, StorageError
from app.db.models.prototype import Prototype

logger = structlog.get_logger(__name__)


@dataclass
class PrototypeFilters:
    project_id: UUID | None = None
    requirement_id: UUID | None = None
    status: str | None = None
    platform: str | None = None
    style_type: str | None = None

    def clauses(self) -> list:
        clauses = []
        for name in ("project_id", "requirement_id", "status", "platform", "style_type"):
            value = getattr(self, name)
            if value is not None:
                clauses.append(getattr(Prototype, name) == value)
        return clauses


class PrototypeStore:
    """Persistence for prototypes and their lineage columns."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, prototype_id: UUID) -> Prototype | None:
        try:
            async with self.session_factory() as session:
                return await session.get(Prototype, prototype_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load prototype {prototype_id}: {exc}") from exc

    async def list_children(self, parent_id: UUID) -> list[Prototype]:
        """Direct children of a prototype, ordered by version."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Prototype).where(Prototype.parent_id == parent_id).order_by(Prototype.version)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load children of {parent_id}: {exc}") from exc

    async def count_children(self, parent_id: UUID) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.count()).select_from(Prototype).where(Prototype.parent_id == parent_id)
                )
                return result.scalar_one()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to count children of {parent_id}: {exc}") from exc

    async def allocate_version(self, parent_id: UUID) -> int:
        """Atomically reserve the next child version of parent_id.

        A single UPDATE ... RETURNING on the parent row, so concurrent
        derivations from the same parent always get distinct versions.

        Raises:
            NotFoundError: parent does not exist
            StorageError: database failure
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Prototype)
                    .where(Prototype.id == parent_id)
                    .values(child_count=Prototype.child_count + 1)
                    .returning(Prototype.child_count)
                )
                version = result.scalar_one_or_none()
                if version is None:
                    raise NotFoundError("Prototype", parent_id)
                await session.commit()
                return version
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to allocate version under {parent_id}: {exc}") from exc

    async def create(self, prototype: Prototype) -> Prototype:
        try:
            async with self.session_factory() as session:
                session.add(prototype)
                await session.commit()
                await session.refresh(prototype)
                return prototype
        except IntegrityError as exc:
            raise StorageError(f"Prototype violates a constraint: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to save prototype: {exc}") from exc

    async def update(self, prototype_id: UUID, fields: dict) -> Prototype:
        """Overwrite scalar columns on one prototype.

        Raises:
            NotFoundError: prototype does not exist
        """
        try:
            async with self.session_factory() as session:
                prototype = await session.get(Prototype, prototype_id)
                if prototype is None:
                    raise NotFoundError("Prototype", prototype_id)
                for name, value in fields.items():
                    setattr(prototype, name, value)
                await session.commit()
                await session.refresh(prototype)
                return prototype
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update prototype {prototype_id}: {exc}") from exc

    async def merge_analysis(self, prototype_id: UUID, analysis: dict) -> Prototype:
        """Merge keys into analysis_result, keeping whatever was there."""
        try:
            async with self.session_factory() as session:
                prototype = await session.get(Prototype, prototype_id)
                if prototype is None:
                    raise NotFoundError("Prototype", prototype_id)
                prototype.analysis_result = {**(prototype.analysis_result or {}), **analysis}
                flag_modified(prototype, "analysis_result")
                await session.commit()
                await session.refresh(prototype)
                return prototype
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update analysis of {prototype_id}: {exc}") from exc

    async def list_page(
        self,
        filters: PrototypeFilters | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Prototype], int]:
        """Newest-first page of prototypes plus the total matching count."""
        clauses = (filters or PrototypeFilters()).clauses()
        try:
            async with self.session_factory() as session:
                total = (
                    await session.execute(select(func.count()).select_from(Prototype).where(*clauses))
                ).scalar_one()
                result = await session.execute(
                    select(Prototype)
                    .where(*clauses)
                    .order_by(Prototype.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
                return list(result.scalars().all()), total
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list prototypes: {exc}") from exc

    async def delete(self, prototype_id: UUID) -> None:
        """Delete a leaf prototype.

        Raises:
            NotFoundError: prototype does not exist
            ConflictError: prototype still has children
        """
        try:
            async with self.session_factory() as session:
                prototype = await session.get(Prototype, prototype_id)
                if prototype is None:
                    raise NotFoundError("Prototype", prototype_id)
                children = (
                    await session.execute(
                        select(func.count()).select_from(Prototype).where(Prototype.parent_id == prototype_id)
                    )
                ).scalar_one()
                if children:
                    raise ConflictError(
                        f"Cannot delete prototype with {children} child version(s)",
                        children_count=children,
                    )
                await session.delete(prototype)
                await session.commit()
        except IntegrityError as exc:
            # A child was inserted between the count and the delete
            raise ConflictError("Cannot delete prototype with child versions") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete prototype {prototype_id}: {exc}") from exc

        logger.info("prototype_deleted", prototype_id=str(prototype_id))
