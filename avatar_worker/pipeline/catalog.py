"""
Model catalog: which provider serves each model, what it can render,
what it costs, and where it falls back to.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import UnknownModel


@dataclass(frozen=True)
class ModelSpec:
    id: str
    label: str
    provider: str              # adapter name: kie | sora2 | kling | runway
    api_model: str             # model name sent to Kie.ai
    credits_per_segment: int
    max_scenes: int
    supports_image: bool
    supports_text: bool
    default_duration: int      # seconds per scene
    fallback: Optional[str] = None


MODEL_CATALOG: dict[str, ModelSpec] = {
    "veo3_fast": ModelSpec(
        id="veo3_fast", label="Veo 3.1 Fast", provider="kie", api_model="veo3_fast",
        credits_per_segment=1, max_scenes=10, supports_image=True, supports_text=True,
        default_duration=8, fallback="sora2_pro_720",
    ),
    "veo3": ModelSpec(
        id="veo3", label="Veo 3.1 Quality", provider="kie", api_model="veo3",
        credits_per_segment=3, max_scenes=10, supports_image=True, supports_text=True,
        default_duration=8, fallback="veo3_fast",
    ),
    "sora2_pro_720": ModelSpec(
        id="sora2_pro_720", label="Sora 2 Pro 720p", provider="sora2",
        api_model="sora-2-pro-image-to-video", credits_per_segment=1, max_scenes=5,
        supports_image=True, supports_text=False, default_duration=10, fallback="veo3_fast",
    ),
    "sora2_pro_1080": ModelSpec(
        id="sora2_pro_1080", label="Sora 2 Pro 1080p", provider="sora2",
        api_model="sora-2-pro-image-to-video", credits_per_segment=2, max_scenes=5,
        supports_image=True, supports_text=False, default_duration=10, fallback="sora2_pro_720",
    ),
    "kling_2_6": ModelSpec(
        id="kling_2_6", label="Kling 2.6", provider="kling",
        api_model="kling-2.6/image-to-video", credits_per_segment=2, max_scenes=1,
        supports_image=True, supports_text=False, default_duration=10, fallback="veo3_fast",
    ),
    "runway_extend": ModelSpec(
        id="runway_extend", label="Runway Extend", provider="runway", api_model="runway",
        credits_per_segment=1, max_scenes=10, supports_image=True, supports_text=True,
        default_duration=5, fallback="veo3_fast",
    ),
}

FALLBACK_MODELS = {model_id: spec.fallback for model_id, spec in MODEL_CATALOG.items() if spec.fallback}


def get_model(model_id: str) -> ModelSpec:
    spec = MODEL_CATALOG.get(model_id)
    if spec is None:
        raise UnknownModel(f"Unknown model: {model_id}")
    return spec


def credits_for(model_id: str, scenes: int) -> int:
    return get_model(model_id).credits_per_segment * max(1, scenes)


def unsupported_reason(spec: ModelSpec, has_image: bool, scene_count: int) -> Optional[str]:
    """Why a model cannot serve this request, or None when it can."""
    if has_image and not spec.supports_image:
        return f"{spec.label} does not accept a reference image"
    if not has_image and not spec.supports_text:
        return f"{spec.label} requires a reference image"
    if scene_count > spec.max_scenes:
        return f"{spec.label} supports at most {spec.max_scenes} scene(s)"
    return None
