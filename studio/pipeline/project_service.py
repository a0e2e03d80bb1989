"""
Project Lifecycle Service.

Moves a project through its generation states:

  create_project   charge → upload inputs → record (generating)
                   → Gemini composite image → upload → ready
  create_video     check state → charge → claim record → Veo operation
                   → poll → download → upload → complete

Once credits have been charged every failure refunds them and, once
the project record exists, writes is_generating=false and the error
onto it. Both compensations are attempted independently; a failing
compensation is reported to the error log and never replaces the
error returned to the caller.

Callers pass the authenticated user id explicitly into every method.
"""

import os
import asyncio
import logging
import tempfile
from typing import Optional
from uuid import uuid4

from .. import gemini
from .. import metrics
from . import storage
from .errors import (
    ProjectError,
    Unauthorized,
    InvalidRequest,
    InsufficientCredits,
    ProjectNotFound,
    InvalidState,
    GenerationFailed,
    InfrastructureFailure,
    GenerationTimedOut,
)
from .models import (
    ASPECT_RATIOS,
    DEFAULT_ASPECT_RATIO,
    DEFAULT_TARGET_LENGTH,
    IMAGE_CREDIT_COST,
    MAX_UPLOAD_BYTES,
    SIGNUP_CREDITS,
    VIDEO_CREDIT_COST,
    ImageUpload,
    ProjectCreateRequest,
    ProjectResponse,
    PublishedProjectResponse,
    derive_status,
)
from .store import ProjectStore, CreditLedger

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

VIDEO_POLL_INTERVAL = float(os.getenv("VIDEO_POLL_INTERVAL", "10"))  # seconds
VIDEO_MAX_POLL_ATTEMPTS = int(os.getenv("VIDEO_MAX_POLL_ATTEMPTS", "60"))
VIDEO_TMP_DIR = os.getenv("VIDEO_TMP_DIR", "") or tempfile.gettempdir()

IMAGE_FAILURE_MESSAGE = "Image generation failed. Your credits have been refunded."
VIDEO_FAILURE_MESSAGE = "Video generation failed. Your credits have been refunded."


def project_to_response(row: dict) -> ProjectResponse:
    """Convert a Supabase row dict to a ProjectResponse."""
    return ProjectResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row.get("name") or "",
        product_name=row.get("product_name") or "",
        product_description=row.get("product_description") or "",
        user_prompt=row.get("user_prompt") or "",
        aspect_ratio=row.get("aspect_ratio") or DEFAULT_ASPECT_RATIO,
        target_length=row.get("target_length") or DEFAULT_TARGET_LENGTH,
        uploaded_images=row.get("uploaded_images") or [],
        generated_image=row.get("generated_image"),
        generated_video=row.get("generated_video"),
        is_generating=bool(row.get("is_generating")),
        is_published=bool(row.get("is_published")),
        error=row.get("error"),
        status=derive_status(row),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def coerce_target_length(value) -> int:
    try:
        length = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_TARGET_LENGTH
    return length if length > 0 else DEFAULT_TARGET_LENGTH


def _validate_image(upload: ImageUpload, label: str):
    if not (upload.content_type or "").lower().startswith("image/"):
        raise InvalidRequest(f"{label} must be an image")
    if len(upload.data) > MAX_UPLOAD_BYTES:
        raise InvalidRequest(f"{label} is larger than {MAX_UPLOAD_BYTES // (1024 * 1024)} MB")


def _error_text(error: BaseException) -> str:
    text = getattr(error, "detail", None) or str(error) or type(error).__name__
    return text[:1000]


class ProjectService:
    """
    Usage:
        service = ProjectService()

        project_id = await service.create_project(user_id, request, product_image, model_image)
        video_url = await service.create_video(user_id, project_id)

    ``store``, ``ledger``, ``media`` and ``provider`` default to the
    Supabase store/ledger, the storage module and the gemini module.
    """

    def __init__(
        self,
        store: Optional[ProjectStore] = None,
        ledger: Optional[CreditLedger] = None,
        media=None,
        provider=None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        tmp_dir: Optional[str] = None,
    ):
        self.store = store or ProjectStore()
        self.ledger = ledger or CreditLedger()
        self.media = media or storage
        self.provider = provider or gemini
        self.poll_interval = VIDEO_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_poll_attempts = VIDEO_MAX_POLL_ATTEMPTS if max_poll_attempts is None else max_poll_attempts
        self.tmp_dir = tmp_dir or VIDEO_TMP_DIR

    # ── Credits ──────────────────────────────────────────────────────────

    def _charge(self, user_id: str, amount: int, reason: str, endpoint: str, project_id: str):
        try:
            charged = self.ledger.charge(user_id, amount, reason=reason, project_id=project_id)
        except Exception as e:
            logger.error(f"Credit charge failed for {user_id}: {e}", exc_info=True)
            metrics.capture_exception(e, endpoint=endpoint, user_id=user_id)
            raise InfrastructureFailure("Could not reserve credits. Please try again.", detail=str(e)) from e
        if not charged:
            raise InsufficientCredits("Insufficient credits")
        metrics.inc_counter("credits.charged", amount)

    def _refund(self, user_id: str, amount: int, project_id: str, endpoint: str):
        try:
            self.ledger.refund(user_id, amount, reason=f"{endpoint}_refund", project_id=project_id)
            metrics.inc_counter("credits.refunded", amount)
        except Exception as refund_err:
            logger.error(
                f"Refund of {amount} credits to {user_id} failed (project {project_id}): {refund_err}",
                exc_info=True,
            )
            metrics.capture_exception(refund_err, endpoint=f"{endpoint}.refund", user_id=user_id)

    def _fail(
        self,
        user_id: str,
        amount: int,
        project_id: str,
        error: BaseException,
        endpoint: str,
        record_exists: bool,
    ):
        """Compensate a charged operation that failed. Never raises."""
        logger.error(f"{endpoint} failed for project {project_id}: {_error_text(error)}", exc_info=error)
        metrics.capture_exception(error, endpoint=endpoint, user_id=user_id)

        if record_exists:
            try:
                self.store.update(project_id, {"is_generating": False, "error": _error_text(error)})
            except Exception as write_err:
                logger.error(f"Failed to record failure on project {project_id}: {write_err}", exc_info=True)
                metrics.capture_exception(write_err, endpoint=f"{endpoint}.write_back", user_id=user_id)

        self._refund(user_id, amount, project_id, endpoint)

    # ═════════════════════════════════════════════════════════════════════
    # A. Image generation
    # ═════════════════════════════════════════════════════════════════════

    async def create_project(
        self,
        user_id: str,
        request: ProjectCreateRequest,
        product_image: Optional[ImageUpload],
        model_image: Optional[ImageUpload],
    ) -> str:
        """
        POST /projects/create

        1. Validate fields and both input images (no charge on failure)
        2. Charge IMAGE_CREDIT_COST credits
        3. Upload both inputs concurrently
        4. Create the project record with is_generating=True
        5. Generate the composite image with Gemini
        6. Upload it and mark the project ready

        Returns the new project id.
        """
        if not user_id:
            raise Unauthorized("Unauthorized")

        product_name = (request.product_name or "").strip()
        if not product_name:
            raise InvalidRequest("Product name is required")
        if not product_image or not model_image or not product_image.data or not model_image.data:
            raise InvalidRequest("Both product image and model image are required")
        _validate_image(product_image, "Product image")
        _validate_image(model_image, "Model image")

        aspect_ratio = request.aspect_ratio or DEFAULT_ASPECT_RATIO
        if aspect_ratio not in ASPECT_RATIOS:
            raise InvalidRequest(f"aspectRatio must be one of {', '.join(ASPECT_RATIOS)}")

        project_id = str(uuid4())
        self._charge(user_id, IMAGE_CREDIT_COST, "image_generation", "create_project", project_id)

        record_exists = False
        try:
            product_url, model_url = await asyncio.gather(
                self.media.upload_bytes(
                    storage.project_key(user_id, project_id, "product", product_image.content_type),
                    product_image.data,
                    product_image.content_type,
                ),
                self.media.upload_bytes(
                    storage.project_key(user_id, project_id, "model", model_image.content_type),
                    model_image.data,
                    model_image.content_type,
                ),
            )

            self.store.create({
                "id": project_id,
                "user_id": user_id,
                "name": request.name or "New Project",
                "product_name": product_name,
                "product_description": request.product_description or "",
                "user_prompt": request.user_prompt or "",
                "aspect_ratio": aspect_ratio,
                "target_length": coerce_target_length(request.target_length),
                "uploaded_images": [product_url, model_url],
                "generated_image": None,
                "generated_video": None,
                "is_generating": True,
                "is_published": False,
                "error": None,
            })
            record_exists = True
            logger.info(f"Project {project_id} → generating (user {user_id})")

            response = await self.provider.generate_composite_image(
                product_image.data,
                product_image.content_type,
                model_image.data,
                model_image.content_type,
                prompt=self.provider.build_composite_prompt(request.user_prompt),
                aspect_ratio=aspect_ratio,
            )
            image = self.provider.extract_image(response)
            if image is None:
                raise GenerationFailed(
                    IMAGE_FAILURE_MESSAGE,
                    detail="Image generation failed: provider returned no image",
                )
            image_bytes, mime_type = image

            generated_url = await self.media.upload_bytes(
                storage.project_key(user_id, project_id, "generated", mime_type),
                image_bytes,
                mime_type,
            )
            self.store.update(project_id, {
                "generated_image": generated_url,
                "is_generating": False,
                "error": None,
            })
            logger.info(f"Project {project_id} → ready: {generated_url}")
            return project_id

        except asyncio.CancelledError as e:
            self._fail(user_id, IMAGE_CREDIT_COST, project_id, e, "create_project", record_exists)
            raise

        except Exception as e:
            self._fail(user_id, IMAGE_CREDIT_COST, project_id, e, "create_project", record_exists)
            if isinstance(e, ProjectError):
                raise
            raise InfrastructureFailure(IMAGE_FAILURE_MESSAGE, detail=_error_text(e)) from e

    # ═════════════════════════════════════════════════════════════════════
    # B. Video generation
    # ═════════════════════════════════════════════════════════════════════

    async def start_video(self, user_id: str, project_id: str) -> dict:
        """
        Validate, charge VIDEO_CREDIT_COST credits and claim the project.

        Returns the project row; the claim has set is_generating=True.
        """
        if not user_id:
            raise Unauthorized("Unauthorized")
        if not project_id:
            raise InvalidRequest("projectId is required")

        project = self.store.get_owned(project_id, user_id)
        if not project:
            raise ProjectNotFound("Project not found")
        if project.get("is_generating") or not project.get("generated_image"):
            raise InvalidState("Invalid project state")
        if project.get("generated_video"):
            raise InvalidState("Project already has a video")

        self._charge(user_id, VIDEO_CREDIT_COST, "video_generation", "create_video", project_id)

        try:
            claimed = self.store.claim_generation(project_id, user_id)
        except Exception as e:
            self._fail(user_id, VIDEO_CREDIT_COST, project_id, e, "create_video", record_exists=False)
            raise InfrastructureFailure(VIDEO_FAILURE_MESSAGE, detail=_error_text(e)) from e

        if not claimed:
            logger.warning(f"Project {project_id} was claimed by a concurrent request")
            self._refund(user_id, VIDEO_CREDIT_COST, project_id, "create_video")
            raise InvalidState("Invalid project state")

        logger.info(f"Project {project_id} → generating_video (user {user_id})")
        return {**project, "is_generating": True}

    async def finish_video(self, user_id: str, project: dict) -> str:
        """Run the Veo job for a claimed project. Returns the uploaded video URL."""
        project_id = project["id"]
        temp_path = None
        try:
            image_url = project["generated_image"]
            image_bytes = await self.media.download_bytes(image_url)

            operation = await self.provider.submit_video(
                image_bytes,
                storage.guess_mime(image_url),
                prompt=self.provider.build_video_prompt(project.get("product_name") or ""),
                aspect_ratio=project.get("aspect_ratio") or DEFAULT_ASPECT_RATIO,
            )
            operation = await self._wait_for_operation(operation, project_id)

            provider_error = self.provider.operation_error(operation)
            if provider_error:
                raise GenerationFailed(VIDEO_FAILURE_MESSAGE, detail=f"Video generation failed: {provider_error}")
            video_uri = self.provider.extract_video_uri(operation)
            if not video_uri:
                raise GenerationFailed(VIDEO_FAILURE_MESSAGE, detail="Video generation failed: no video in response")

            os.makedirs(self.tmp_dir, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=f"{project_id}_", suffix=".mp4", dir=self.tmp_dir)
            os.close(fd)
            await self.provider.download_video(video_uri, temp_path)

            video_url = await self.media.upload_file(
                storage.project_key(user_id, project_id, "video", "video/mp4"),
                temp_path,
                "video/mp4",
            )
            self.store.update(project_id, {
                "generated_video": video_url,
                "is_generating": False,
                "error": None,
            })
            logger.info(f"Project {project_id} → complete: {video_url}")
            return video_url

        except asyncio.CancelledError as e:
            self._fail(user_id, VIDEO_CREDIT_COST, project_id, e, "create_video", record_exists=True)
            raise

        except Exception as e:
            self._fail(user_id, VIDEO_CREDIT_COST, project_id, e, "create_video", record_exists=True)
            if isinstance(e, ProjectError):
                raise
            raise InfrastructureFailure(VIDEO_FAILURE_MESSAGE, detail=_error_text(e)) from e

        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    async def _wait_for_operation(self, operation: dict, project_id: str) -> dict:
        for attempt in range(self.max_poll_attempts):
            if operation.get("done"):
                return operation
            await asyncio.sleep(self.poll_interval)
            operation = await self.provider.get_operation(operation["name"])
            logger.info(f"Veo poll #{attempt + 1} for project {project_id}: done={bool(operation.get('done'))}")

        if operation.get("done"):
            return operation
        raise GenerationTimedOut(
            "Video generation timed out. Your credits have been refunded.",
            detail=f"Video generation timed out after {self.max_poll_attempts} polls",
        )

    async def create_video(self, user_id: str, project_id: str) -> str:
        """POST /projects/video. Blocks until the video is uploaded."""
        project = await self.start_video(user_id, project_id)
        return await self.finish_video(user_id, project)

    async def run_video_job(self, user_id: str, project: dict):
        """Background wrapper for finish_video; failures are already compensated."""
        try:
            await self.finish_video(user_id, project)
        except ProjectError as e:
            logger.error(f"Background video job for project {project['id']} failed: {e.detail or e.message}")

    # ═════════════════════════════════════════════════════════════════════
    # C. Read / publish / delete
    # ═════════════════════════════════════════════════════════════════════

    def get_project(self, user_id: str, project_id: str) -> ProjectResponse:
        project = self.store.get_owned(project_id, user_id)
        if not project:
            raise ProjectNotFound("Project not found")
        return project_to_response(project)

    def list_projects(self, user_id: str) -> list[ProjectResponse]:
        return [project_to_response(row) for row in self.store.list_for_user(user_id)]

    def list_published(self) -> list[PublishedProjectResponse]:
        return [
            PublishedProjectResponse(
                id=row["id"],
                name=row.get("name") or "",
                product_name=row.get("product_name") or "",
                product_description=row.get("product_description") or "",
                aspect_ratio=row.get("aspect_ratio") or DEFAULT_ASPECT_RATIO,
                generated_image=row.get("generated_image"),
                generated_video=row.get("generated_video"),
                created_at=row.get("created_at"),
            )
            for row in self.store.list_published()
            if row.get("is_published")
        ]

    def set_published(self, user_id: str, project_id: str, is_published: bool) -> ProjectResponse:
        project = self.store.get_owned(project_id, user_id)
        if not project:
            raise ProjectNotFound("Project not found")
        if is_published and not project.get("generated_image"):
            raise InvalidState("Only projects with a generated image can be published")

        updated = self.store.update_owned(project_id, user_id, {"is_published": is_published})
        if not updated:
            raise ProjectNotFound("Project not found")
        logger.info(f"Project {project_id} published={is_published}")
        return project_to_response(updated)

    def delete_project(self, user_id: str, project_id: str):
        if not self.store.delete_owned(project_id, user_id):
            raise ProjectNotFound("Project not found")
        logger.info(f"Project {project_id} deleted by {user_id}")

    def get_credits(self, user_id: str) -> int:
        return self.ledger.ensure_account(user_id, SIGNUP_CREDITS)
