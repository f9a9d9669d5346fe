"""Generation operations and the builder that turns them into provider requests.

Each operation variant carries only the fields it needs and knows:
- which fields are required (validate_fields, before any lookup)
- what it needs from its ancestor (validate_ancestor, before any network call)
- the provider request(s) to submit (build_requests)
- the columns of the prototype it produces (record_fields)

Region edits return several requests: the provider accepts inpaint jobs in
more than one shape, so they are submitted in order until one is accepted.
A feedback iteration returns no request when it cannot use the provider;
the service then records a metadata-only iteration.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import UUID

import structlog

from app.core.config import get_settings
from app.core.exceptions import ValidationError
from app.imaging import prompts
from app.imaging.results import GenerationResult
from app.integrations.midjourney import ProviderRequest
from app.schemas.prototypes import (
    BlendDimensions,
    GenerationType,
    Platform,
    PrototypeStatus,
    StyleType,
)

logger = structlog.get_logger(__name__)

IMAGINE = "/mj/submit/imagine"
ACTION = "/mj/submit/action"
BLEND = "/mj/submit/blend"
DESCRIBE = "/mj/submit/describe"

DEFAULT_BOT = "MID_JOURNEY"
INPAINT_BOT = "mj_fast_inpaint"

GRID_SIZE = 4  # the provider returns a 2x2 grid per imagine job
MIN_BLEND_IMAGES = 2
MAX_BLEND_IMAGES = 5

Translator = Callable[[str], Awaitable[str]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require(**values: Any) -> None:
    """Raise one ValidationError naming every missing field (wire names)."""
    missing = [name for name, value in values.items() if _is_blank(value)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)


def _require_task(ancestor, action: str) -> None:
    if not ancestor.task_id:
        raise ValidationError(f"Original prototype missing taskId. Cannot {action}.", fields=["taskId"])


def _check_index(index: int) -> None:
    if isinstance(index, bool) or not isinstance(index, int) or not 1 <= index <= GRID_SIZE:
        raise ValidationError(f"index must be between 1 and {GRID_SIZE}", fields=["index"])


def _strip_data_url(data: str) -> str:
    if data.startswith("data:"):
        return data.split(",", 1)[1] if "," in data else data
    return data


def _imagine_body(prompt: str, bot_type: str = DEFAULT_BOT, base64_array: list[str] | None = None, **extra) -> dict:
    return {
        "botType": bot_type,
        "prompt": prompt,
        "base64Array": base64_array or [],
        "notifyHook": "",
        "state": "",
        **extra,
    }


def _inherited(ancestor) -> dict[str, Any]:
    return {
        "platform": ancestor.platform,
        "style_type": ancestor.style_type,
        "requirement_id": ancestor.requirement_id,
        "project_id": ancestor.project_id,
    }


def _generated_image(result: GenerationResult) -> dict[str, Any]:
    return {
        "image_url": result.image_url,
        "image_path": result.task_id,
        "image_mime_type": result.mime_type,
        "task_id": result.task_id,
        "generation_time": result.duration_ms,
        "prompt_tokens": result.prompt_tokens,
    }


class Operation(ABC):
    """Base class for the closed set of generation operations."""

    kind: ClassVar[GenerationType]
    model_name: ClassVar[str] = "midjourney"
    derived: ClassVar[bool] = False

    @property
    def parent_id(self) -> UUID | None:
        return None

    def validate_fields(self) -> None:
        """Check caller input that does not depend on the ancestor."""

    def validate_ancestor(self, ancestor) -> None:
        """Check what the operation needs from the ancestor prototype."""

    async def localize(self, builder: "OperationBuilder") -> "Operation":
        return self

    @abstractmethod
    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]: ...

    @abstractmethod
    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]: ...


@dataclass(frozen=True)
class GenerateOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.INITIAL_GENERATION

    title: str | None
    prompt_text: str | None
    description: str | None = None
    platform: str = Platform.WEB
    style_type: str = StyleType.WIREFRAME
    project_id: UUID | None = None
    requirement_id: UUID | None = None
    translate: bool = True
    provider_prompt: str | None = None  # translated prompt, when different

    def validate_fields(self) -> None:
        _require(title=self.title, promptText=self.prompt_text)

    async def localize(self, builder: "OperationBuilder") -> "GenerateOperation":
        if not self.translate or not prompts.needs_translation(self.prompt_text):
            return self
        translated = await builder.translate(self.prompt_text)
        if translated == self.prompt_text:
            return self
        return replace(self, provider_prompt=translated)

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        prompt = builder.compose(self.provider_prompt or self.prompt_text, self.style_type)
        return [ProviderRequest(IMAGINE, _imagine_body(prompt))]

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "platform": self.platform,
            "style_type": self.style_type,
            "prompt_text": self.prompt_text,
            "project_id": self.project_id,
            "requirement_id": self.requirement_id,
            "status": PrototypeStatus.DRAFT,
            "model_used": self.model_name,
            "analysis_result": {
                "generatedAt": datetime.now(UTC).isoformat(),
                "prompt": self.prompt_text,
                "translatedPrompt": self.provider_prompt,
                "taskId": result.task_id,
                "progress": result.progress,
            },
            **_generated_image(result),
        }


@dataclass(frozen=True)
class UpscaleOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.UPSCALE
    model_name: ClassVar[str] = "midjourney-upscale"
    derived: ClassVar[bool] = True

    prototype_id: UUID
    index: int = 1

    @property
    def parent_id(self) -> UUID:
        return self.prototype_id

    def validate_fields(self) -> None:
        _check_index(self.index)

    def validate_ancestor(self, ancestor) -> None:
        _require_task(ancestor, "upscale")

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        return [ProviderRequest(ACTION, {"taskId": ancestor.task_id, "action": "UPSCALE", "index": self.index})]

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        return {
            "title": f"{ancestor.title} - Upscaled",
            "description": ancestor.description,
            "prompt_text": ancestor.prompt_text,
            "image_index": self.index,
            "status": PrototypeStatus.DRAFT,
            "model_used": "midjourney",
            **_inherited(ancestor),
            **_generated_image(result),
        }


@dataclass(frozen=True)
class VariationOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.VARIATION
    model_name: ClassVar[str] = "midjourney-variation"
    derived: ClassVar[bool] = True

    prototype_id: UUID
    index: int = 1
    custom_prompt: str | None = None

    @property
    def parent_id(self) -> UUID:
        return self.prototype_id

    def validate_fields(self) -> None:
        _check_index(self.index)

    def validate_ancestor(self, ancestor) -> None:
        _require_task(ancestor, "create variation")

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        body: dict[str, Any] = {"taskId": ancestor.task_id, "action": "VARIATION", "index": self.index}
        if self.custom_prompt:
            # Remix mode: the provider mixes the new prompt with the original job
            body["customId"] = self.custom_prompt
        return [ProviderRequest(ACTION, body)]

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        if self.custom_prompt:
            suffix = self.custom_prompt[:30] + ("..." if len(self.custom_prompt) > 30 else "")
            title = f"{ancestor.title} - {suffix}"
        else:
            title = f"{ancestor.title} - Variation {version}"
        return {
            "title": title,
            "description": self.custom_prompt or ancestor.description,
            "prompt_text": self.custom_prompt or ancestor.prompt_text,
            "image_index": self.index,
            "status": PrototypeStatus.DRAFT,
            "model_used": "midjourney",
            **_inherited(ancestor),
            **_generated_image(result),
        }


@dataclass(frozen=True)
class RegionEditOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.REGION_EDIT
    model_name: ClassVar[str] = "midjourney-inpaint"
    derived: ClassVar[bool] = True

    prototype_id: UUID
    mask_data_url: str | None
    prompt: str | None
    edit_region_data: Any = None

    @property
    def parent_id(self) -> UUID:
        return self.prototype_id

    def validate_fields(self) -> None:
        _require(maskDataUrl=self.mask_data_url, prompt=self.prompt)

    def validate_ancestor(self, ancestor) -> None:
        _require_task(ancestor, "vary region")

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        mask = [_strip_data_url(self.mask_data_url)]
        requests = []
        if ancestor.image_url:
            requests.append(
                ProviderRequest(
                    IMAGINE,
                    _imagine_body(self.prompt, INPAINT_BOT, mask, imageUrl=ancestor.image_url),
                    strategy="imagine+mask+imageUrl",
                )
            )
        requests.append(
            ProviderRequest(
                IMAGINE,
                _imagine_body(self.prompt, INPAINT_BOT, mask, customId=ancestor.task_id),
                strategy="imagine+mask+customId",
            )
        )
        requests.append(
            ProviderRequest(
                IMAGINE,
                _imagine_body(f"{ancestor.task_id} {self.prompt}", INPAINT_BOT, mask),
                strategy="imagine+mask-only",
            )
        )
        return requests

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        return {
            "title": f"{ancestor.title} - Region edit {version}",
            "description": self.prompt,
            "prompt_text": self.prompt,
            "mask_image_url": self.mask_data_url,
            "edit_region_data": self.edit_region_data,
            "status": PrototypeStatus.DRAFT,
            "model_used": f"{self.model_name}-{result.strategy}" if result.strategy else self.model_name,
            "analysis_result": {"strategy": result.strategy, "taskId": result.task_id},
            **_inherited(ancestor),
            **_generated_image(result),
        }


@dataclass(frozen=True)
class IterationOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.ITERATION
    model_name: ClassVar[str] = "midjourney-iteration"
    derived: ClassVar[bool] = True

    parent_prototype_id: UUID | None
    feedback: str | None
    requirements: str | None = None

    @property
    def parent_id(self) -> UUID | None:
        return self.parent_prototype_id

    def validate_fields(self) -> None:
        _require(parentPrototypeId=self.parent_prototype_id, feedback=self.feedback)

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        source = ancestor.image_url
        if not builder.iteration_uses_provider or not source or source.startswith("data:"):
            logger.info(
                "iteration_metadata_only",
                parent_id=str(ancestor.id),
                has_image=bool(source),
                provider_enabled=builder.iteration_uses_provider,
            )
            return []
        text = prompts.iteration_prompt(ancestor.prompt_text, self.feedback, self.requirements, image_url=source)
        return [ProviderRequest(IMAGINE, _imagine_body(builder.compose(text, ancestor.style_type)))]

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        feedback_excerpt = self.feedback[:100] + ("..." if len(self.feedback) > 100 else "")
        prompt_text = f"Feedback: {self.feedback}"
        if self.requirements:
            prompt_text += f"\n\nRequirements: {self.requirements}"

        fields: dict[str, Any] = {
            "title": f"{ancestor.title} (v{version})",
            "description": f"Iteration based on feedback: {feedback_excerpt}",
            "prompt_text": prompt_text,
            "suggestions": self.feedback,
            "identified_components": ancestor.identified_components,
            "status": PrototypeStatus.DRAFT,
            "analysis_result": {
                "mode": "provider" if result is not None else "metadata_only",
                "feedback": self.feedback,
                "requirements": self.requirements,
                "sourcePrototypeId": str(ancestor.id),
                "iteratedAt": datetime.now(UTC).isoformat(),
            },
            **_inherited(ancestor),
        }

        if result is not None:
            fields.update(_generated_image(result), model_used="midjourney")
        else:
            # No new pixels: carry the parent's image forward as a placeholder
            fields.update(
                image_url=ancestor.image_url,
                image_path=ancestor.image_path,
                image_size=ancestor.image_size,
                image_mime_type=ancestor.image_mime_type,
                source_image_url=ancestor.source_image_url,
                task_id=None,
                model_used="metadata-only",
                generation_time=0,
            )
        return fields


@dataclass(frozen=True)
class BlendOperation(Operation):
    kind: ClassVar[GenerationType] = GenerationType.BLEND
    model_name: ClassVar[str] = "midjourney-blend"

    title: str | None
    images: tuple[str | None, ...]
    dimensions: str = BlendDimensions.SQUARE
    description: str | None = None
    project_id: UUID | None = None
    requirement_id: UUID | None = None

    def validate_fields(self) -> None:
        _require(title=self.title)
        if any(_is_blank(image) for image in self.images):
            raise ValidationError("Both canvas image and reference image are required", fields=["images"])
        if not MIN_BLEND_IMAGES <= len(self.images) <= MAX_BLEND_IMAGES:
            raise ValidationError(
                f"Blend requires {MIN_BLEND_IMAGES}-{MAX_BLEND_IMAGES} images", fields=["images"]
            )
        if self.dimensions not in {d.value for d in BlendDimensions}:
            raise ValidationError(f"Unsupported dimensions: {self.dimensions}", fields=["dimensions"])

    def build_requests(self, ancestor, builder: "OperationBuilder") -> list[ProviderRequest]:
        body = {
            "botType": DEFAULT_BOT,
            "base64Array": list(self.images),
            "dimensions": str(self.dimensions),
            "notifyHook": "",
            "state": "",
        }
        return [ProviderRequest(BLEND, body)]

    def record_fields(self, ancestor, result: GenerationResult | None, version: int) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "platform": Platform.INDUSTRIAL,
            "style_type": StyleType.INDUSTRIAL_HMI,
            "project_id": self.project_id,
            "requirement_id": self.requirement_id,
            "status": PrototypeStatus.FINAL,
            "model_used": self.model_name,
            **_generated_image(result),
            "image_path": f"blend/{result.task_id}",
        }


def describe_request(image_url: str) -> ProviderRequest:
    """Request for the provider's image-to-prompt (describe) job."""
    if image_url.startswith("data:"):
        return ProviderRequest(DESCRIBE, {"botType": DEFAULT_BOT, "base64": image_url})
    return ProviderRequest(DESCRIBE, {"botType": DEFAULT_BOT, "imageUrl": image_url})


class OperationBuilder:
    """Single entry point that validates an operation and builds its provider requests.

    Args:
        model_version: Midjourney model version flag ("7", "niji 6", ...)
        translator: Optional async callable translating prompts to English
        iteration_uses_provider: When False, iterations are always metadata-only
    """

    def __init__(
        self,
        model_version: str | None = None,
        translator: Translator | None = None,
        iteration_uses_provider: bool | None = None,
    ):
        settings = get_settings()
        self.model_version = model_version or settings.midjourney_model_version
        self.translator = translator
        self.iteration_uses_provider = (
            settings.iteration_uses_provider if iteration_uses_provider is None else iteration_uses_provider
        )

    def compose(self, prompt: str, style_type: str | None) -> str:
        return prompts.compose_prompt(prompt, style_type, self.model_version)

    async def translate(self, text: str) -> str:
        if self.translator is None:
            return text
        translated = await self.translator(text)
        logger.info("prompt_translated", original_length=len(text), translated_length=len(translated))
        return translated or text

    async def prepare(self, operation: Operation) -> Operation:
        return await operation.localize(self)

    def build(self, operation: Operation, ancestor=None) -> list[ProviderRequest]:
        """Validate against the ancestor and return the request(s), fallbacks in order.

        Raises:
            ValidationError: missing/invalid fields or an ancestor without taskId
        """
        operation.validate_fields()
        if operation.derived:
            operation.validate_ancestor(ancestor)
        return operation.build_requests(ancestor, self)
