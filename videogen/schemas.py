# videogen/schemas.py
# Request / response schemas and the model compatibility table

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .errors import InvalidCharacterParams, InvalidJobParams

Orientation = Literal["portrait", "landscape"]
Size = Literal["small", "large"]


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(frozen=True)
class ModelSpec:
    name: str
    durations: tuple
    sizes: tuple
    pipeline_timeout_minutes: int


BASE_MODEL = "sora-2"
PRO_MODEL = "sora-2-pro"

MODELS: Dict[str, ModelSpec] = {
    BASE_MODEL: ModelSpec(BASE_MODEL, durations=(10, 15), sizes=("small", "large"), pipeline_timeout_minutes=30),
    PRO_MODEL: ModelSpec(PRO_MODEL, durations=(15, 25), sizes=("large",), pipeline_timeout_minutes=60),
}


def check_job_params(model: str, prompt: str, duration: int, size: str) -> ModelSpec:
    """Raises InvalidJobParams unless the combination is accepted by the service."""
    spec = MODELS.get(model)
    if spec is None:
        raise InvalidJobParams(f"unknown model '{model}', expected one of {sorted(MODELS)}")
    if not prompt or not prompt.strip():
        raise InvalidJobParams("prompt must not be empty")
    if duration not in spec.durations:
        raise InvalidJobParams(f"duration {duration} not allowed for {model}, allowed: {list(spec.durations)}")
    if size not in spec.sizes:
        raise InvalidJobParams(f"size '{size}' not allowed for {model}, allowed: {list(spec.sizes)}")
    return spec


class CreateJobParams(BaseModel):
    model: str = BASE_MODEL
    prompt: str
    images: List[str] = Field(default_factory=list)
    orientation: Orientation = "portrait"
    size: Size = "small"
    duration: int = 10

    @model_validator(mode="after")
    def _compatible(self):
        check_job_params(self.model, self.prompt, self.duration, self.size)
        return self

    def to_request(self) -> Dict[str, Any]:
        # field order follows the service docs
        return {
            "images": list(self.images),
            "model": self.model,
            "orientation": self.orientation,
            "prompt": self.prompt.strip(),
            "size": self.size,
            "duration": int(self.duration),
        }


class JobStatus(BaseModel):
    """One normalized response of the query endpoint."""
    task_id: str
    status: TaskStatus
    progress: Optional[float] = None  # 0-100, None when the service did not report it
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    enhanced_prompt: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class TransformOutput(BaseModel):
    text: str
    url: Optional[str] = None
    image_data: Optional[bytes] = None
    mime_type: Optional[str] = None


class PromptSettings(BaseModel):
    main_image_prompt: str
    scene_prompt: str


# -------------------------------------------------------------------
# Characters (reusable people cut from a short video clip)
# -------------------------------------------------------------------
CHARACTER_MIN_SECONDS = 1.0
CHARACTER_MAX_SECONDS = 3.0


def check_character_window(start: float, end: float) -> None:
    if start < 0 or end < 0:
        raise InvalidCharacterParams("timestamps must not be negative")
    if start >= end:
        raise InvalidCharacterParams("start must be before end")
    span = end - start
    if span < CHARACTER_MIN_SECONDS or span > CHARACTER_MAX_SECONDS:
        raise InvalidCharacterParams(
            f"clip must be {CHARACTER_MIN_SECONDS:g}-{CHARACTER_MAX_SECONDS:g}s long, got {span:g}s"
        )


class CharacterParams(BaseModel):
    url: str
    start: float
    end: float

    @model_validator(mode="after")
    def _window(self):
        if not self.url.strip():
            raise InvalidCharacterParams("video url must not be empty")
        check_character_window(self.start, self.end)
        return self

    @property
    def timestamps(self) -> str:
        # "1,3" means seconds 1 to 3
        return f"{self.start:g},{self.end:g}"

    def to_request(self) -> Dict[str, Any]:
        return {"url": self.url.strip(), "timestamps": self.timestamps}


class Character(BaseModel):
    id: str
    username: str
    permalink: Optional[str] = None
    profile_picture_url: Optional[str] = None

    @computed_field
    @property
    def prompt_tag(self) -> str:
        """How the character is referenced inside a video prompt."""
        return f"@{{{self.username}}}"


# -------------------------------------------------------------------
# Batch rows
# -------------------------------------------------------------------
# spreadsheet template codes: model 1=sora-2 2=sora-2-pro, orientation 1=portrait 2=landscape,
# size 1=small(720p) 2=large(1080p)
_MODEL_CODES = {"1": BASE_MODEL, "2": PRO_MODEL}
_ORIENTATION_CODES = {"1": "portrait", "2": "landscape"}
_SIZE_CODES = {"1": "small", "2": "large"}


def _decode(value: Any, codes: Dict[str, str]) -> Any:
    if isinstance(value, (int, str)):
        return codes.get(str(value).strip(), value)
    return value


class BatchRow(CreateJobParams):
    # remote URL, or a local path whose bytes come in image_content
    image_source: Optional[str] = None
    image_content: Optional[bytes] = None

    @field_validator("model", mode="before")
    @classmethod
    def _model_code(cls, v):
        return _decode(v, _MODEL_CODES)

    @field_validator("orientation", mode="before")
    @classmethod
    def _orientation_code(cls, v):
        return _decode(v, _ORIENTATION_CODES)

    @field_validator("size", mode="before")
    @classmethod
    def _size_code(cls, v):
        return _decode(v, _SIZE_CODES)

    def job_params(self, images: List[str]) -> CreateJobParams:
        data = self.model_dump(exclude={"image_source", "image_content", "images"})
        return CreateJobParams(images=[*self.images, *images], **data)


class RowOutcome(BaseModel):
    index: int
    placeholder_id: str
    task_id: Optional[str] = None
    status: Literal["submitted", "unresolved", "failed"]
    error: Optional[str] = None


class BatchReport(BaseModel):
    rows: List[RowOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> List[RowOutcome]:
        return [r for r in self.rows if r.status == "failed"]


# -------------------------------------------------------------------
# API payloads
# -------------------------------------------------------------------
class CreateTasksRequest(CreateJobParams):
    count: int = Field(default=1, ge=1, le=20)


class TasksCreated(BaseModel):
    placeholder_ids: List[str]


class TaskOut(BaseModel):
    id: str
    status: str
    progress: float
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    duration: Optional[int] = None
    orientation: Optional[str] = None
    size: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ProductCreate(BaseModel):
    title: str = Field(min_length=1)
    main_image_url: str
    model: str = BASE_MODEL
    duration: int = 10


class ProductOut(BaseModel):
    id: str
    title: str
    main_image_url: str
    derived_image_url: Optional[str] = None
    status: str
    progress: float
    result_url: Optional[str] = None
    task_id: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    duration: Optional[int] = None
    orientation: Optional[str] = None
    size: Optional[str] = None
    error: Optional[str] = None
    error_stage: Optional[str] = None
    created_at: datetime


class BatchRequest(BaseModel):
    rows: List[BatchRow] = Field(min_length=1)


class UploadOut(BaseModel):
    url: str
