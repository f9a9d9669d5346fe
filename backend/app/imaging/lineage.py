"""Version lineage: parent linkage and per-parent version numbers."""

from uuid import UUID

import structlog

from app.core.exceptions import LineageError

logger = structlog.get_logger(__name__)

ROOT_VERSION = 1


class LineageManager:
    """Allocates child versions and stamps parent/version onto new prototypes.

    Versions come from the parent's child_count, incremented atomically by the
    store. Two concurrent derivations from one parent therefore never share a
    version; a derivation that fails after allocation leaves a gap.
    """

    def __init__(self, store):
        self.store = store

    async def next_version(self, parent_id: UUID) -> int:
        version = await self.store.allocate_version(parent_id)
        logger.debug("lineage_version_allocated", parent_id=str(parent_id), version=version)
        return version

    @staticmethod
    def attach(prototype, parent_id: UUID, version: int) -> None:
        """Set parent_id and version on a prototype that has neither yet."""
        if prototype.parent_id is not None or prototype.version is not None:
            raise LineageError(f"Lineage already set on prototype {prototype.id}")
        if version < 1:
            raise LineageError(f"Invalid version {version}")
        prototype.parent_id = parent_id
        prototype.version = version

    @staticmethod
    def attach_root(prototype) -> None:
        if prototype.parent_id is not None or prototype.version is not None:
            raise LineageError(f"Lineage already set on prototype {prototype.id}")
        prototype.version = ROOT_VERSION
