"""
Gemini integration for composite image generation and image-to-video.

- Image: Gemini 2.5 Flash Image via REST generateContent (inline image parts)
- Video: Veo via REST predictLongRunning → long-running operation → file download
"""

import os
import base64
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

IMAGE_MODEL = os.environ.get("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
VIDEO_MODEL = os.environ.get("GEMINI_VIDEO_MODEL", "veo-3.0-fast-generate-001")

# Provider-side blocking is off for every category.
SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_HARASSMENT",
]

COMPOSITE_PROMPT = (
    "Create a photorealistic e-commerce image showing a person naturally "
    "interacting with the product. Match lighting, shadows, scale, and perspective."
)

SHOWCASE_PROMPT = "Showcase the product {product_name} naturally and professionally."


def _require_key():
    if not GEMINI_API_KEY:
        raise RuntimeError("GEMINI_API_KEY not set")


def _raise_for_gemini(resp: httpx.Response, action: str):
    if resp.status_code != 200:
        raise RuntimeError(f"Gemini {action} error {resp.status_code}: {resp.text[:500]}")


def _inline_part(data: bytes, mime_type: str) -> dict:
    return {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}}


# =========================================================================
# 1. Composite Image: product + model → photorealistic scene
# =========================================================================

def build_composite_prompt(user_prompt: str = "") -> str:
    user_prompt = (user_prompt or "").strip()
    return f"{COMPOSITE_PROMPT} {user_prompt}" if user_prompt else COMPOSITE_PROMPT


def build_image_request(
    product_image: bytes,
    product_mime: str,
    model_image: bytes,
    model_mime: str,
    prompt: str,
    aspect_ratio: str,
) -> dict:
    return {
        "contents": [{
            "parts": [
                _inline_part(product_image, product_mime),
                _inline_part(model_image, model_mime),
                {"text": prompt},
            ]
        }],
        "generationConfig": {
            "maxOutputTokens": 32768,
            "temperature": 1,
            "topP": 0.95,
            "responseModalities": ["IMAGE"],
            "imageConfig": {"aspectRatio": aspect_ratio},
        },
        "safetySettings": [
            {"category": category, "threshold": "OFF"} for category in SAFETY_CATEGORIES
        ],
    }


async def generate_composite_image(
    product_image: bytes,
    product_mime: str,
    model_image: bytes,
    model_mime: str,
    prompt: str,
    aspect_ratio: str,
) -> dict:
    """Call generateContent with both reference images; returns the raw response JSON."""
    _require_key()
    body = build_image_request(product_image, product_mime, model_image, model_mime, prompt, aspect_ratio)

    logger.info(f"Gemini image request: model={IMAGE_MODEL}, aspect={aspect_ratio}, prompt={prompt[:60]}...")
    async with httpx.AsyncClient(timeout=180) as client:
        resp = await client.post(
            f"{API_BASE}/models/{IMAGE_MODEL}:generateContent",
            params={"key": GEMINI_API_KEY},
            json=body,
        )
    _raise_for_gemini(resp, "image")
    return resp.json()


def extract_image(response: dict) -> Optional[tuple[bytes, str]]:
    """First inline image of the first candidate as (bytes, mime_type), or None."""
    candidates = (response or {}).get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return base64.b64decode(inline["data"]), mime_type
    return None


# =========================================================================
# 2. Video: Veo long-running operation
# =========================================================================

def build_video_prompt(product_name: str) -> str:
    return SHOWCASE_PROMPT.format(product_name=product_name)


def build_video_request(image: bytes, mime_type: str, prompt: str, aspect_ratio: str) -> dict:
    return {
        "instances": [{
            "prompt": prompt,
            "image": {
                "bytesBase64Encoded": base64.b64encode(image).decode(),
                "mimeType": mime_type,
            },
        }],
        "parameters": {
            "aspectRatio": aspect_ratio,
            "sampleCount": 1,
            "resolution": "720p",
        },
    }


async def submit_video(image: bytes, mime_type: str, prompt: str, aspect_ratio: str) -> dict:
    """Start an image-to-video job. Returns the operation ({"name": ..., "done": ...})."""
    _require_key()
    body = build_video_request(image, mime_type, prompt, aspect_ratio)

    logger.info(f"Veo request: model={VIDEO_MODEL}, aspect={aspect_ratio}, prompt={prompt[:60]}...")
    async with httpx.AsyncClient(timeout=60) as client:
        resp = await client.post(
            f"{API_BASE}/models/{VIDEO_MODEL}:predictLongRunning",
            params={"key": GEMINI_API_KEY},
            json=body,
        )
    _raise_for_gemini(resp, "video submit")
    operation = resp.json()
    if not operation.get("name"):
        raise RuntimeError(f"Veo returned no operation name: {str(operation)[:300]}")
    logger.info(f"Veo operation started: {operation['name']}")
    return operation


async def get_operation(name: str) -> dict:
    """Fetch the current state of a long-running operation."""
    _require_key()
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.get(f"{API_BASE}/{name}", params={"key": GEMINI_API_KEY})
    _raise_for_gemini(resp, "operation poll")
    return resp.json()


def operation_error(operation: dict) -> Optional[str]:
    error = (operation or {}).get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return str(error)


def extract_video_uri(operation: dict) -> Optional[str]:
    """URI of the first generated sample of a finished operation, or None."""
    response = (operation or {}).get("response") or {}
    video_response = response.get("generateVideoResponse") or response
    samples = video_response.get("generatedSamples") or video_response.get("generatedVideos") or []
    if not samples or not isinstance(samples, list):
        return None
    video = samples[0].get("video") or {}
    return video.get("uri")


async def download_video(uri: str, dest_path: str) -> str:
    """Stream a generated video file to ``dest_path``."""
    _require_key()
    async with httpx.AsyncClient(timeout=300, follow_redirects=True) as client:
        async with client.stream("GET", uri, params={"key": GEMINI_API_KEY}) as resp:
            resp.raise_for_status()
            with open(dest_path, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    f.write(chunk)
    logger.info(f"Veo video downloaded to {dest_path}")
    return dest_path
