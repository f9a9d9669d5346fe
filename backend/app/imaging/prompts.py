"""Midjourney prompt assembly.

The user's prompt text is sent as-is; only Midjourney parameters are appended
(aspect ratio, model version and a style flag per style type).
"""

import re

from app.schemas.prototypes import StyleType

ASPECT_RATIO = "--ar 16:9"

STYLE_PARAMS: dict[str, str] = {
    StyleType.WIREFRAME: "--style raw",  # less artistic post-processing
    StyleType.HIGH_FIDELITY: "--stylize 100",
    StyleType.SKETCH: "--style raw",
}

_NON_LATIN = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]")


def version_param(model_version: str) -> str:
    """Model version flag: 7 -> --v 7, niji 6 -> --niji 6."""
    if "niji" in model_version:
        return f"--{model_version}"
    return f"--v {model_version}"


def midjourney_params(style_type: str | None, model_version: str) -> str:
    params = [ASPECT_RATIO, version_param(model_version)]
    style = STYLE_PARAMS.get(style_type or StyleType.WIREFRAME)
    if style:
        params.append(style)
    return " ".join(params)


def compose_prompt(prompt: str, style_type: str | None, model_version: str) -> str:
    return f"{prompt.strip()} {midjourney_params(style_type, model_version)}"


def needs_translation(text: str) -> bool:
    """True when the prompt contains CJK characters Midjourney handles poorly."""
    return bool(_NON_LATIN.search(text))


def iteration_prompt(
    base_prompt: str | None,
    feedback: str,
    requirements: str | None,
    image_url: str | None = None,
) -> str:
    """Prompt for a feedback iteration: optional image prompt, base prompt, feedback, requirements."""
    parts = []
    if image_url:
        parts.append(image_url)
    if base_prompt:
        parts.append(base_prompt.strip().rstrip(".") + ".")
    parts.append(f"Feedback: {feedback.strip()}")
    if requirements:
        parts.append(f"Requirements: {requirements.strip()}")
    return " ".join(parts)
