"""
Pydantic models and enums for the avatar video generation saga.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TEXT_ONLY_IMAGE = "text-only-mode"


# ── Phase & Status ───────────────────────────────────────────────────────────

class Phase(str, Enum):
    INITIAL = "initial"
    EXTENDED = "extended"
    FINAL = "final"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


def phase_columns(phase: Phase) -> dict:
    """Column names backing one phase on the generation row."""
    if phase == Phase.FINAL:
        return {
            "status": "final_video_status",
            "task_id": None,
            "error": "final_video_error",
            "url": "final_video_url",
            "completed_at": "final_video_completed_at",
        }
    name = phase.value
    return {
        "status": f"{name}_status",
        "task_id": f"{name}_task_id",
        "error": f"{name}_error",
        "url": f"{name}_video_url",
        "completed_at": f"{name}_completed_at",
    }


class ResultState(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"


class NextStep(str, Enum):
    NONE = "none"
    ADVANCE = "advance"
    STITCH = "stitch"
    FINALIZE = "finalize"


# ── Scene & Segment ──────────────────────────────────────────────────────────

class ScenePrompt(BaseModel):
    prompt: str = ""
    script: str = ""
    camera: Optional[str] = None
    connects_to_next: Optional[str] = None


class VideoSegment(BaseModel):
    url: str
    scene: int
    type: str  # initial | extended
    duration: int = 0  # milliseconds
    task_id: Optional[str] = None
    completed_at: Optional[str] = None


# ── Generation Record ────────────────────────────────────────────────────────

class GenerationRecord(BaseModel):
    """One row of kie_video_generations; the only durable saga memory."""

    id: str
    user_id: Optional[str] = None

    image_url: Optional[str] = None
    model: str = "veo3_fast"
    aspect_ratio: str = "16:9"
    resolution: Optional[str] = None
    duration: int = 8
    watermark: Optional[str] = None
    seeds: Optional[int] = None
    ai_prompt: Optional[str] = None
    avatar_name: Optional[str] = None
    industry: Optional[str] = None
    avatar_identity_prefix: Optional[str] = None

    number_of_scenes: int = 1
    scene_prompts: list[Any] = Field(default_factory=list)
    current_scene: int = 1
    is_multi_scene: bool = False
    video_segments: list[VideoSegment] = Field(default_factory=list)
    cancelled: bool = False

    initial_status: PhaseStatus = PhaseStatus.PENDING
    initial_task_id: Optional[str] = None
    initial_error: Optional[str] = None
    initial_video_url: Optional[str] = None
    initial_completed_at: Optional[str] = None

    extended_status: PhaseStatus = PhaseStatus.PENDING
    extended_task_id: Optional[str] = None
    extended_error: Optional[str] = None
    extended_video_url: Optional[str] = None
    extended_completed_at: Optional[str] = None

    final_video_status: PhaseStatus = PhaseStatus.PENDING
    final_video_url: Optional[str] = None
    final_video_error: Optional[str] = None
    final_video_completed_at: Optional[str] = None
    is_final: bool = False

    original_model: Optional[str] = None
    fallback_reason: Optional[str] = None
    retry_count: int = 0
    metadata: dict = Field(default_factory=dict)

    @field_validator("initial_status", "extended_status", "final_video_status", mode="before")
    @classmethod
    def _default_status(cls, value):
        return value or PhaseStatus.PENDING

    @field_validator("scene_prompts", "video_segments", mode="before")
    @classmethod
    def _default_list(cls, value):
        return value or []

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_dict(cls, value):
        return value or {}

    @field_validator("current_scene", "number_of_scenes", "retry_count", mode="before")
    @classmethod
    def _default_int(cls, value, info):
        if value is None:
            return 0 if info.field_name == "retry_count" else 1
        return value

    @field_validator("cancelled", "is_multi_scene", "is_final", mode="before")
    @classmethod
    def _default_bool(cls, value):
        return bool(value)

    # ── Derived helpers ──

    @property
    def has_image(self) -> bool:
        return bool(self.image_url) and self.image_url != TEXT_ONLY_IMAGE

    def status_of(self, phase: Phase) -> PhaseStatus:
        return getattr(self, phase_columns(phase)["status"])

    def task_id_of(self, phase: Phase) -> Optional[str]:
        column = phase_columns(phase)["task_id"]
        return getattr(self, column) if column else None

    def phase_for_task(self, task_id: str) -> Optional[Phase]:
        if not task_id:
            return None
        if self.initial_task_id == task_id:
            return Phase.INITIAL
        if self.extended_task_id == task_id:
            return Phase.EXTENDED
        return None

    def scene_prompt(self, scene_number: int) -> Optional[ScenePrompt]:
        """Scene prompts are stored 0-indexed; scenes are numbered from 1."""
        index = scene_number - 1
        if index < 0 or index >= len(self.scene_prompts):
            return None
        raw = self.scene_prompts[index]
        if isinstance(raw, str):
            raw = {"prompt": raw}
        if not isinstance(raw, dict):
            return None
        try:
            scene = ScenePrompt(**raw)
        except (TypeError, ValueError):
            return None
        if not scene.prompt.strip():
            return None
        return scene

    def segment_urls(self) -> list[str]:
        return [s.url for s in sorted(self.video_segments, key=lambda s: s.scene)]


# ── Provider result (normalized callback / status shape) ─────────────────────

class ProviderResult(BaseModel):
    task_id: Optional[str] = None
    state: ResultState = ResultState.RUNNING
    video_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == ResultState.SUCCESS


# ── API Request / Response Models ────────────────────────────────────────────

class GenerateRequest(BaseModel):
    model: str = "veo3_fast"
    user_id: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = Field(None, description="Single-scene prompt when no scene_prompts are given")
    script: Optional[str] = None
    scene_prompts: list[ScenePrompt] = Field(default_factory=list)
    aspect_ratio: str = "16:9"
    duration: Optional[int] = None
    resolution: Optional[str] = None
    watermark: Optional[str] = None
    generation_id: Optional[str] = None
    avatar_name: Optional[str] = None
    industry: Optional[str] = None
    avatar_identity_prefix: Optional[str] = None
    enable_fallback: bool = True
    max_retries: int = 2

    @property
    def has_image(self) -> bool:
        return bool(self.image_url) and self.image_url != TEXT_ONLY_IMAGE

    def scenes(self) -> list[ScenePrompt]:
        if self.scene_prompts:
            return list(self.scene_prompts)
        return [ScenePrompt(prompt=self.prompt or "", script=self.script or "")]


class GenerateResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    success: bool
    generation_id: Optional[str] = None
    task_id: Optional[str] = None
    model_used: Optional[str] = None
    fallback_used: bool = False
    original_model: Optional[str] = None
    fallback_model: Optional[str] = None
    fallback_reason: Optional[str] = None
    attempted_models: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    user_action: Optional[str] = None


class RetryRequest(BaseModel):
    edited_prompt: Optional[str] = None
    edited_script: Optional[str] = None


class CallbackOutcome(BaseModel):
    generation_id: Optional[str] = None
    task_id: Optional[str] = None
    phase: Optional[Phase] = None
    applied: bool = False
    next_step: NextStep = NextStep.NONE
    downstream_error: Optional[str] = None
