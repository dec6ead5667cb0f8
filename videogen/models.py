# videogen/models.py
# Tables (ORM models): tasks, products and prompt settings

from typing import List, Optional
from datetime import datetime
from sqlmodel import SQLModel, Field, Column, JSON

from .schemas import TaskStatus

TEMP_ID_PREFIX = "tmp_"


def is_temp_id(task_id: str) -> bool:
    return task_id.startswith(TEMP_ID_PREFIX)


class Task(SQLModel, table=True):
    id: str = Field(primary_key=True, index=True)
    status: str = Field(default=TaskStatus.PENDING.value, index=True)  # pending | queued | processing | completed | failed
    progress: float = 0.0
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    orientation: Optional[str] = None
    size: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return TaskStatus(self.status).is_terminal


class Product(SQLModel, table=True):
    id: str = Field(primary_key=True, index=True)
    title: str
    main_image_url: str
    derived_image_url: Optional[str] = None  # stage 1 output
    prompt: Optional[str] = None  # stage 2 output, replaced by the enhanced prompt on completion
    status: str = Field(default=TaskStatus.PENDING.value, index=True)
    progress: float = 0.0
    result_url: Optional[str] = None
    task_id: Optional[str] = Field(default=None, index=True)
    model: Optional[str] = None
    duration: Optional[int] = None
    orientation: Optional[str] = None
    size: Optional[str] = None
    error: Optional[str] = None
    error_stage: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class PromptSettingsRecord(SQLModel, table=True):
    id: str = Field(default="default", primary_key=True)
    main_image_prompt: str
    scene_prompt: str
