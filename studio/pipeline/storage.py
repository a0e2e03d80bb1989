"""
Media upload gateway.

All project assets are stored under:
  projects/{user_id}/{project_id}/{name}.{ext}

Two backends, selected with MEDIA_BACKEND:
  supabase Supabase Storage bucket (default)
  r2       Cloudflare R2 through the S3 API (boto3)

Both return a stable public URL for the uploaded object.
"""

import os
import asyncio
import logging

import httpx

from ..supabase_client import get_supabase

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MEDIA_BACKEND = os.getenv("MEDIA_BACKEND", "supabase")
MEDIA_BUCKET = os.getenv("MEDIA_BUCKET", "media")

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def extension_for(content_type: str, default: str = "png") -> str:
    return _EXTENSIONS.get((content_type or "").split(";")[0].strip().lower(), default)


def project_key(user_id: str, project_id: str, name: str, content_type: str) -> str:
    """Object key for one asset of a project."""
    return f"projects/{user_id}/{project_id}/{name}.{extension_for(content_type)}"


def guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


async def download_bytes(url: str) -> bytes:
    """Download an asset from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=60, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


# ── Backends ─────────────────────────────────────────────────────────────────

def _upload_supabase(key: str, data: bytes, content_type: str) -> str:
    bucket = get_supabase().storage.from_(MEDIA_BUCKET)
    bucket.upload(key, data, file_options={"content-type": content_type, "upsert": "true"})
    return bucket.get_public_url(key)


def _upload_r2(key: str, data: bytes, content_type: str) -> str:
    import boto3
    from botocore.config import Config as BotoConfig

    s3 = boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )
    s3.put_object(Bucket=R2_BUCKET_NAME, Key=key, Body=data, ContentType=content_type)
    return f"{R2_PUBLIC_URL.rstrip('/')}/{key}"


_BACKENDS = {
    "supabase": _upload_supabase,
    "r2": _upload_r2,
}


# ── Public API ───────────────────────────────────────────────────────────────

async def upload_bytes(key: str, data: bytes, content_type: str = "image/png") -> str:
    """
    Upload bytes to the configured media backend.

    The blocking SDK call runs in a worker thread so several uploads can
    be awaited together with asyncio.gather.

    Returns the public URL of the uploaded object.
    """
    upload = _BACKENDS.get(MEDIA_BACKEND)
    if upload is None:
        raise RuntimeError(f"Unknown MEDIA_BACKEND '{MEDIA_BACKEND}'")
    try:
        public_url = await asyncio.to_thread(upload, key, data, content_type)
    except Exception as e:
        logger.error(f"Media upload failed for key={key}: {e}")
        raise
    logger.info(f"Uploaded {len(data)} bytes to {MEDIA_BACKEND}: {public_url}")
    return public_url


async def upload_file(key: str, path: str, content_type: str = "video/mp4") -> str:
    """Upload a local file (e.g. a downloaded video) and return its public URL."""
    with open(path, "rb") as f:
        data = f.read()
    return await upload_bytes(key, data, content_type)
