"""API schemas for generation endpoints."""
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..generation import GenerationTask, TaskState
from ..generation.models import IMAGE_RESOLUTIONS

MAX_GARMENTS = 4
MAX_GENERATIONS_PER_REQUEST = 4


class ImageInput(BaseModel):
    """An input image given either by URL or inline as base64."""

    url: Optional[str] = None
    base64: Optional[str] = None
    mime_type: Optional[str] = Field(alias="mimeType", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _require_source(self) -> "ImageInput":
        if not self.url and not self.base64:
            raise ValueError("image needs a url or base64 data")
        return self

    def as_source(self) -> Dict[str, str]:
        if self.url:
            return {"url": self.url}
        return {"base64": self.base64 or "", "mime_type": self.mime_type or "image/png"}


class ImageGenerationRequest(BaseModel):
    person_image: ImageInput = Field(alias="personImage")
    garments: List[ImageInput] = Field(min_length=1, max_length=MAX_GARMENTS)
    prompt: str = Field(min_length=1)
    mode: Optional[str] = None
    scene: Optional[str] = None
    visual_style: Optional[str] = Field(alias="visualStyle", default=None)
    aspect_ratio: str = Field(alias="aspectRatio", default="4:5")
    resolution: str = "2K"
    num_generations: int = Field(alias="numGenerations", default=1, ge=1, le=MAX_GENERATIONS_PER_REQUEST)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _check_resolution(self) -> "ImageGenerationRequest":
        if self.resolution not in IMAGE_RESOLUTIONS:
            raise ValueError(f"resolution must be one of {', '.join(IMAGE_RESOLUTIONS)}")
        return self

    def full_prompt(self) -> str:
        prompt = self.prompt
        if self.scene:
            prompt += f" Scene: {self.scene}."
        if self.visual_style:
            prompt += f" Visual style: {self.visual_style}."
        if self.mode == "panel":
            prompt += " Show all garments in a grid panel layout."
        return prompt


class VideoGenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    image_input: Optional[str] = Field(alias="imageInput", default=None)
    aspect_ratio: str = Field(alias="aspectRatio", default="16:9")
    duration: Literal[5, 10] = 5
    sound: bool = False

    model_config = ConfigDict(populate_by_name=True)


class TaskStatusResponse(BaseModel):
    task_id: str = Field(alias="taskId")
    status: TaskState
    progress: float
    result_urls: List[str] = Field(alias="resultUrls", default_factory=list)
    error: Optional[str] = None
    failure_reason: Optional[str] = Field(alias="failureReason", default=None)
    credits_reserved: int = Field(alias="creditsReserved", default=0)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_task(cls, task: GenerationTask) -> "TaskStatusResponse":
        return cls(
            task_id=task.task_id,
            status=task.state,
            progress=task.progress,
            result_urls=list(task.result_urls),
            error=task.error_message,
            failure_reason=task.failure_reason.value if task.failure_reason else None,
            credits_reserved=task.credits_reserved,
        )


class GenerationResponse(BaseModel):
    task_ids: List[str] = Field(alias="taskIds")
    credits_reserved: int = Field(alias="creditsReserved")
    tasks: List[TaskStatusResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_tasks(cls, tasks: List[GenerationTask]) -> "GenerationResponse":
        return cls(
            task_ids=[task.task_id for task in tasks],
            credits_reserved=sum(task.credits_reserved for task in tasks if task.state != TaskState.FAILED),
            tasks=[TaskStatusResponse.from_task(task) for task in tasks],
        )
