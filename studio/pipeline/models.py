"""
Pydantic models and enums for the project lifecycle.
"""

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Pricing & limits ─────────────────────────────────────────────────────────

IMAGE_CREDIT_COST = int(os.getenv("IMAGE_CREDIT_COST", "5"))
VIDEO_CREDIT_COST = int(os.getenv("VIDEO_CREDIT_COST", "10"))
SIGNUP_CREDITS = int(os.getenv("SIGNUP_CREDITS", "20"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

ASPECT_RATIOS = ("9:16", "16:9")
DEFAULT_ASPECT_RATIO = "9:16"
DEFAULT_TARGET_LENGTH = 5


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    GENERATING = "generating"
    FAILED = "failed"
    READY = "ready"
    GENERATING_VIDEO = "generating_video"
    COMPLETE = "complete"


def derive_status(row: dict) -> ProjectStatus:
    """Lifecycle state from the stored flags; there is no status column."""
    if row.get("generated_video"):
        return ProjectStatus.COMPLETE
    if row.get("is_generating"):
        if row.get("generated_image"):
            return ProjectStatus.GENERATING_VIDEO
        return ProjectStatus.GENERATING
    if row.get("generated_image"):
        return ProjectStatus.READY
    return ProjectStatus.FAILED


# ── Inputs ───────────────────────────────────────────────────────────────────

class ImageUpload(BaseModel):
    """An input image read from the multipart body."""
    filename: str = ""
    content_type: str = ""
    data: bytes = b""


class ProjectCreateRequest(BaseModel):
    name: str = "New Project"
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    user_prompt: str = ""
    product_name: Optional[str] = None
    product_description: str = ""
    target_length: Optional[str] = None


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VideoRequest(CamelModel):
    project_id: str


class PublishRequest(CamelModel):
    is_published: bool = True


# ── Responses ────────────────────────────────────────────────────────────────

class ProjectResponse(CamelModel):
    id: str
    user_id: str
    name: str = ""
    product_name: str = ""
    product_description: str = ""
    user_prompt: str = ""
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    target_length: int = DEFAULT_TARGET_LENGTH
    uploaded_images: list[str] = Field(default_factory=list)
    generated_image: Optional[str] = None
    generated_video: Optional[str] = None
    is_generating: bool = False
    is_published: bool = False
    error: Optional[str] = None
    status: ProjectStatus
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProjectListResponse(CamelModel):
    projects: list[ProjectResponse] = Field(default_factory=list)


class PublishedProjectResponse(CamelModel):
    """Public gallery entry. No owner, inputs or error text."""
    id: str
    name: str = ""
    product_name: str = ""
    product_description: str = ""
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    generated_image: Optional[str] = None
    generated_video: Optional[str] = None
    created_at: Optional[str] = None


class PublishedProjectListResponse(CamelModel):
    projects: list[PublishedProjectResponse] = Field(default_factory=list)


class CreateProjectResponse(CamelModel):
    project_id: str


class VideoResponse(CamelModel):
    video_url: str


class VideoJobResponse(CamelModel):
    project_id: str
    status: ProjectStatus


class CreditsResponse(CamelModel):
    credits: int


class MessageResponse(CamelModel):
    message: str
