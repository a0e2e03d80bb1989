"""
FastAPI routes for the project lifecycle.

Project Endpoints:
  POST   /projects/create              Upload product + model images, generate image (5 credits)
  POST   /projects/video               Animate a ready project, wait for the video (10 credits)
  POST   /projects/video/async         Same, but generate in the background (202)
  GET    /projects/published           Public gallery
  GET    /projects                     The caller's projects
  GET    /projects/{id}                One owned project (poll here for background jobs)
  POST   /projects/{id}/publish        Toggle gallery visibility
  POST   /projects/{id}                Delete an owned project
  DELETE /projects/{id}                Delete an owned project

User Endpoints:
  GET    /users/credits                Current credit balance
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from .. import metrics
from ..auth import get_current_user_id
from .errors import ProjectError
from .models import (
    DEFAULT_ASPECT_RATIO,
    CreateProjectResponse,
    CreditsResponse,
    ImageUpload,
    MessageResponse,
    ProjectCreateRequest,
    ProjectListResponse,
    PublishedProjectListResponse,
    ProjectResponse,
    ProjectStatus,
    PublishRequest,
    VideoJobResponse,
    VideoRequest,
    VideoResponse,
)
from .project_service import ProjectService

logger = logging.getLogger(__name__)

# Singleton service instance
_service: Optional[ProjectService] = None


def get_project_service() -> ProjectService:
    global _service
    if _service is None:
        _service = ProjectService()
    return _service


def _http_error(e: ProjectError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _unexpected(e: Exception, endpoint: str, user_id: str = "") -> HTTPException:
    logger.error(f"{endpoint} failed: {e}", exc_info=True)
    metrics.capture_exception(e, endpoint=endpoint, user_id=user_id)
    return HTTPException(status_code=500, detail="Something went wrong. Please try again.")


async def _read_upload(upload: Optional[UploadFile]) -> Optional[ImageUpload]:
    if upload is None:
        return None
    return ImageUpload(
        filename=upload.filename or "",
        content_type=upload.content_type or "",
        data=await upload.read(),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


# ── A. Create Project (image) ───────────────────────────────────────────────

@project_router.post("/create", status_code=201, response_model=CreateProjectResponse)
async def create_project(
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
    name: str = Form("New Project"),
    aspect_ratio: str = Form(DEFAULT_ASPECT_RATIO, alias="aspectRatio"),
    user_prompt: str = Form("", alias="userPrompt"),
    product_name: Optional[str] = Form(None, alias="productName"),
    product_description: str = Form("", alias="productDescription"),
    target_length: Optional[str] = Form(None, alias="targetLength"),
    product_image: Optional[UploadFile] = File(None, alias="productImage"),
    model_image: Optional[UploadFile] = File(None, alias="modelImage"),
):
    """
    Charge credits → upload inputs → generate composite image.

    Errors:
      - 400: Missing fields/images, bad aspect ratio, insufficient credits
      - 401: Not signed in
      - 500: Generation or infrastructure failure (credits refunded)
    """
    metrics.inc_counter("requests.create_project")
    request = ProjectCreateRequest(
        name=name,
        aspect_ratio=aspect_ratio,
        user_prompt=user_prompt,
        product_name=product_name,
        product_description=product_description,
        target_length=target_length,
    )
    try:
        project_id = await service.create_project(
            user_id,
            request,
            await _read_upload(product_image),
            await _read_upload(model_image),
        )
        return CreateProjectResponse(project_id=project_id)
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "create_project", user_id)


# ── B. Create Video ──────────────────────────────────────────────────────────

@project_router.post("/video", response_model=VideoResponse)
async def create_video(
    request: VideoRequest,
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """
    Animate the project's generated image. Blocks until the video is stored.

    Errors:
      - 400: Project not ready / already generating / insufficient credits
      - 404: Project not found
      - 500: Generation failed (credits refunded)
      - 504: Generation timed out (credits refunded)
    """
    metrics.inc_counter("requests.create_video")
    try:
        video_url = await service.create_video(user_id, request.project_id)
        return VideoResponse(video_url=video_url)
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "create_video", user_id)


@project_router.post("/video/async", status_code=202, response_model=VideoJobResponse)
async def create_video_async(
    request: VideoRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """Charge + claim now, generate in the background. Poll GET /projects/{id}."""
    metrics.inc_counter("requests.create_video_async")
    try:
        project = await service.start_video(user_id, request.project_id)
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "create_video_async", user_id)

    background_tasks.add_task(service.run_video_job, user_id, project)
    return VideoJobResponse(project_id=request.project_id, status=ProjectStatus.GENERATING_VIDEO)


# ── C. Gallery ───────────────────────────────────────────────────────────────

@project_router.get("/published", response_model=PublishedProjectListResponse)
async def get_published_projects(service: ProjectService = Depends(get_project_service)):
    """All published projects. No auth."""
    try:
        return PublishedProjectListResponse(projects=service.list_published())
    except Exception as e:
        raise _unexpected(e, "published_projects")


# ── D. Owned projects ────────────────────────────────────────────────────────

@project_router.get("", response_model=ProjectListResponse)
async def list_projects(
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """The caller's projects, newest first."""
    try:
        return ProjectListResponse(projects=service.list_projects(user_id))
    except Exception as e:
        raise _unexpected(e, "list_projects", user_id)


@project_router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """
    Full project state. ``status`` is one of:
      generating → ready | failed → generating_video → complete
    """
    try:
        return service.get_project(user_id, project_id)
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "get_project", user_id)


@project_router.post("/{project_id}/publish", response_model=ProjectResponse)
async def publish_project(
    project_id: str,
    request: PublishRequest,
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    try:
        return service.set_published(user_id, project_id, request.is_published)
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "publish_project", user_id)


@project_router.post("/{project_id}", response_model=MessageResponse)
@project_router.delete("/{project_id}", response_model=MessageResponse)
async def delete_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """Delete an owned project. 404 if missing or owned by someone else."""
    try:
        service.delete_project(user_id, project_id)
        return MessageResponse(message="Project Deleted")
    except ProjectError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected(e, "delete_project", user_id)


# ═════════════════════════════════════════════════════════════════════════════
# User Router
# ═════════════════════════════════════════════════════════════════════════════

user_router = APIRouter(prefix="/users", tags=["users"])


@user_router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    user_id: str = Depends(get_current_user_id),
    service: ProjectService = Depends(get_project_service),
):
    """Current balance; opens the account with signup credits on first call."""
    try:
        return CreditsResponse(credits=service.get_credits(user_id))
    except Exception as e:
        raise _unexpected(e, "get_credits", user_id)
