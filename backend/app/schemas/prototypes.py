"""Pydantic schemas for prototype generation, lineage and retrieval.

Wire format is camelCase (promptText, parentPrototypeId, ...); Python code uses
snake_case through populate_by_name.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GenerationType(StrEnum):
    """How a prototype was produced. Immutable after creation."""

    INITIAL_GENERATION = "text_to_image"
    IMAGE_ANALYSIS = "image_analysis"
    UPSCALE = "upscale"
    VARIATION = "variation"
    REGION_EDIT = "vary_region"
    ITERATION = "iteration"
    BLEND = "blend"


class PrototypeStatus(StrEnum):
    """Workflow tag, independent of the provider job status."""

    DRAFT = "draft"
    FINAL = "final"


class Platform(StrEnum):
    WEB = "web"
    IOS = "ios"
    ANDROID = "android"
    INDUSTRIAL = "industrial"


class StyleType(StrEnum):
    WIREFRAME = "wireframe"
    HIGH_FIDELITY = "high_fidelity"
    SKETCH = "sketch"
    INDUSTRIAL_HMI = "industrial_hmi"


class BlendDimensions(StrEnum):
    PORTRAIT = "PORTRAIT"
    SQUARE = "SQUARE"
    LANDSCAPE = "LANDSCAPE"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== REQUESTS ====================
# Required fields are Optional here so missing ones surface as a ValidationError
# naming every absent field instead of a bare 422.


class GenerateRequest(CamelModel):
    title: str | None = None
    prompt_text: str | None = None
    description: str | None = None
    platform: Platform = Platform.WEB
    style_type: StyleType = StyleType.WIREFRAME
    requirement_id: UUID | None = None
    project_id: UUID | None = None


class UpscaleRequest(CamelModel):
    index: int = 1


class VariationRequest(CamelModel):
    custom_prompt: str | None = None
    index: int = 1


class VaryRegionRequest(CamelModel):
    mask_data_url: str | None = None
    prompt: str | None = None
    edit_region_data: dict[str, Any] | list[Any] | None = None


class IterateRequest(CamelModel):
    parent_prototype_id: UUID | None = None
    feedback: str | None = None
    requirements: str | None = None


class BlendRequest(CamelModel):
    title: str | None = None
    description: str | None = None
    canvas_image: str | None = None
    reference_image: str | None = None
    dimensions: BlendDimensions = BlendDimensions.SQUARE
    requirement_id: UUID | None = None
    project_id: UUID | None = None


class PrototypeUpdateRequest(CamelModel):
    """Scalar workflow fields only; lineage and generation fields are write-once."""

    title: str | None = None
    description: str | None = None
    status: PrototypeStatus | None = None
    platform: Platform | None = None
    style_type: StyleType | None = None
    requirement_id: UUID | None = None
    project_id: UUID | None = None


# ==================== RESPONSES ====================


class PrototypeSummary(CamelModel):
    """Parent/child reference embedded in a hydrated prototype."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    title: str
    version: int
    image_url: str | None = None
    created_at: datetime


class PrototypeResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    title: str
    description: str | None = None
    generation_type: GenerationType
    status: PrototypeStatus
    platform: str | None = None
    style_type: str | None = None
    prompt_text: str | None = None
    image_url: str | None = None
    image_path: str | None = None
    image_size: int | None = None
    image_mime_type: str | None = None
    image_index: int | None = None
    task_id: str | None = None
    mask_image_url: str | None = None
    edit_region_data: Any = None
    parent_id: UUID | None = None
    version: int
    analysis_result: dict[str, Any] | None = None
    suggestions: str | None = None
    identified_components: list[Any] | None = None
    model_used: str | None = None
    generation_time: int | None = None
    prompt_tokens: int | None = None
    project_id: UUID | None = None
    requirement_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class PrototypeDetail(PrototypeResponse):
    """A prototype hydrated with its parent and children (ordered by version)."""

    parent: PrototypeSummary | None = None
    children: list[PrototypeSummary] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, prototype, parent=None, children=()) -> "PrototypeDetail":
        detail = cls.model_validate(prototype)
        detail.parent = PrototypeSummary.model_validate(parent) if parent is not None else None
        detail.children = [PrototypeSummary.model_validate(child) for child in children]
        return detail


class PrototypeEnvelope(CamelModel):
    success: bool = True
    data: PrototypeDetail
    message: str | None = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PrototypeListResponse(CamelModel):
    success: bool = True
    data: list[PrototypeResponse]
    pagination: Pagination


class DescribeData(CamelModel):
    prompts: list[str]
    prototype_id: UUID


class DescribeResponse(CamelModel):
    success: bool = True
    data: DescribeData
    message: str | None = None


class GenerationJobResponse(CamelModel):
    """Tracked state of a provider job, in flight or finished."""

    task_id: str
    status: str
    kind: str | None = None
    endpoint: str | None = None
    strategy: str | None = None
    status_message: str | None = None
    image_url: str | None = None
    prototype_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

