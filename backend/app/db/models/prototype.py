"""Prototype model — generated UI/visual assets with a parent/child version lineage."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.db.base import Base


class Prototype(Base):
    """A generated prototype image and its place in the derivation lineage.

    Root prototypes come from text-to-image or blend jobs (version 1, no parent).
    Upscales, variations, region edits and feedback iterations are children of
    the prototype they were derived from. parent_id and version are written once
    at creation and never updated.
    """

    __tablename__ = "prototypes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    generation_type = Column(String(32), nullable=False)  # GenerationType enum value
    status = Column(String(16), nullable=False, default="draft")  # draft, final
    platform = Column(String(32), nullable=True)
    style_type = Column(String(32), nullable=True)
    prompt_text = Column(Text, nullable=True)

    # Realized output (None until a job succeeds)
    image_url = Column(Text, nullable=True)
    image_path = Column(String(255), nullable=True)
    image_size = Column(Integer, nullable=True)
    image_mime_type = Column(String(64), nullable=True)
    image_index = Column(Integer, nullable=True)  # 1-4 grid cell picked by an upscale
    source_image_url = Column(Text, nullable=True)

    # Provider job id; required to upscale/vary/edit from this prototype
    task_id = Column(String(64), nullable=True, index=True)

    # Region edit inputs
    mask_image_url = Column(Text, nullable=True)
    edit_region_data = Column(JSONB, nullable=True)

    # Lineage
    parent_id = Column(UUID(as_uuid=True), ForeignKey("prototypes.id", ondelete="RESTRICT"), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=1)
    child_count = Column(Integer, nullable=False, default=0)  # versions handed out, never decremented

    # Provider side payload, extracted prompts, iteration feedback
    analysis_result = Column(JSONB, nullable=True)
    suggestions = Column(Text, nullable=True)
    identified_components = Column(JSONB, nullable=True)

    # Generation metadata
    model_used = Column(String(64), nullable=True)
    generation_time = Column(Integer, nullable=True)  # milliseconds
    prompt_tokens = Column(Integer, nullable=True)

    # Opaque references into the project-management side
    project_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    requirement_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (UniqueConstraint("parent_id", "version", name="uq_prototype_parent_version"),)
