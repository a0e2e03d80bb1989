"""Pytest configuration and fixtures."""

import base64
import copy
import os
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from studio import gemini
from studio import metrics
from studio.auth import get_current_user_id
from studio.main import app
from studio.pipeline.models import ImageUpload, ProjectCreateRequest
from studio.pipeline.project_service import ProjectService
from studio.pipeline.routes import get_project_service
from studio.pipeline.store import CreditLedger, ProjectStore

USER_ID = "user_1"
OTHER_USER_ID = "user_2"


# ── In-memory Supabase ───────────────────────────────────────────────────────

class FakeQuery:
    """The query-builder subset used by ProjectStore and CreditLedger."""

    def __init__(self, db, table):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload = None
        self._filters = []
        self._order = None

    def select(self, *columns):
        self._op = "select"
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def update(self, payload):
        self._op = "update"
        self._payload = payload
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def is_(self, column, value):
        self._filters.append((column, None if value == "null" else value))
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self):
        error = self._db.fail_on.get((self._table, self._op))
        if error is not None:
            raise error

        hooks = self._db.before.get((self._table, self._op))
        if hooks:
            hooks.pop(0)(self._db)

        rows = self._db.tables.setdefault(self._table, [])

        if self._op == "insert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            rows.extend(copy.deepcopy(items))
            return SimpleNamespace(data=copy.deepcopy(items))

        matched = [row for row in rows if self._matches(row)]

        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
        elif self._op == "delete":
            self._db.tables[self._table] = [row for row in rows if not self._matches(row)]
        elif self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)

        return SimpleNamespace(data=copy.deepcopy(matched))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        # (table, op) → exception raised by execute()
        self.fail_on = {}
        # (table, op) → one-shot callables run before execute()
        self.before = {}

    def table(self, name):
        return FakeQuery(self, name)

    def set_credits(self, user_id, credits):
        users = self.tables.setdefault("users", [])
        for row in users:
            if row["id"] == user_id:
                row["credits"] = credits
                return
        users.append({"id": user_id, "credits": credits})

    def credits(self, user_id):
        for row in self.tables.get("users", []):
            if row["id"] == user_id:
                return row["credits"]
        return None

    def project(self, project_id):
        for row in self.tables.get("projects", []):
            if row["id"] == project_id:
                return row
        return None


# ── Media + provider doubles ─────────────────────────────────────────────────

class FakeMedia:
    def __init__(self):
        self.uploads = []
        self.uploaded_files = []
        self.fail_uploads = None
        self.fail_file_uploads = None

    async def upload_bytes(self, key, data, content_type="image/png"):
        if self.fail_uploads is not None:
            raise self.fail_uploads
        self.uploads.append((key, data, content_type))
        return f"https://cdn.test/{key}"

    async def upload_file(self, key, path, content_type="video/mp4"):
        if self.fail_file_uploads is not None:
            raise self.fail_file_uploads
        assert os.path.exists(path)
        self.uploaded_files.append((key, path, content_type))
        return f"https://cdn.test/{key}"

    async def download_bytes(self, url):
        return b"generated-image-bytes"


def image_response(data=b"generated-image", mime_type="image/png"):
    return {
        "candidates": [{
            "content": {
                "parts": [{"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}}]
            }
        }]
    }


def finished_operation(uri="https://files.test/video.mp4"):
    return {
        "name": "models/veo/operations/op-1",
        "done": True,
        "response": {"generateVideoResponse": {"generatedSamples": [{"video": {"uri": uri}}]}},
    }


class FakeProvider:
    build_composite_prompt = staticmethod(gemini.build_composite_prompt)
    build_video_prompt = staticmethod(gemini.build_video_prompt)
    extract_image = staticmethod(gemini.extract_image)
    extract_video_uri = staticmethod(gemini.extract_video_uri)
    operation_error = staticmethod(gemini.operation_error)

    def __init__(self):
        self.image_response = image_response()
        self.image_error = None
        self.image_calls = []
        self.video_submissions = []
        # Returned by successive get_operation calls
        self.operations = [finished_operation()]
        self.poll_count = 0
        self.downloaded_paths = []
        self.download_error = None

    async def generate_composite_image(self, product_image, product_mime, model_image, model_mime, prompt, aspect_ratio):
        self.image_calls.append({"prompt": prompt, "aspect_ratio": aspect_ratio})
        if self.image_error is not None:
            raise self.image_error
        return self.image_response

    async def submit_video(self, image, mime_type, prompt, aspect_ratio):
        self.video_submissions.append({"prompt": prompt, "aspect_ratio": aspect_ratio, "mime_type": mime_type})
        return {"name": "models/veo/operations/op-1", "done": False}

    async def get_operation(self, name):
        self.poll_count += 1
        if len(self.operations) > 1:
            return self.operations.pop(0)
        return self.operations[0]

    async def download_video(self, uri, dest_path):
        self.downloaded_paths.append(dest_path)
        with open(dest_path, "wb") as f:
            f.write(b"mp4-bytes")
        if self.download_error is not None:
            raise self.download_error
        return dest_path


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def fake_media():
    return FakeMedia()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def video_tmp_dir(tmp_path):
    path = tmp_path / "videos"
    path.mkdir()
    return path


@pytest.fixture
def service(fake_db, fake_media, fake_provider, video_tmp_dir):
    return ProjectService(
        store=ProjectStore(client=fake_db),
        ledger=CreditLedger(client=fake_db),
        media=fake_media,
        provider=fake_provider,
        poll_interval=0,
        max_poll_attempts=3,
        tmp_dir=str(video_tmp_dir),
    )


@pytest.fixture
def create_request():
    return ProjectCreateRequest(
        name="Summer drop",
        aspect_ratio="9:16",
        user_prompt="Golden hour on a beach",
        product_name="Aurora Sunglasses",
        product_description="Polarized lenses",
        target_length="8",
    )


@pytest.fixture
def product_image():
    return ImageUpload(filename="product.png", content_type="image/png", data=b"product-bytes")


@pytest.fixture
def model_image():
    return ImageUpload(filename="model.jpg", content_type="image/jpeg", data=b"model-bytes")


@pytest.fixture
def ready_project(fake_db):
    """A project whose image is done and which has no video yet."""
    row = {
        "id": "proj-ready",
        "user_id": USER_ID,
        "name": "Summer drop",
        "product_name": "Aurora Sunglasses",
        "product_description": "",
        "user_prompt": "",
        "aspect_ratio": "16:9",
        "target_length": 5,
        "uploaded_images": ["https://cdn.test/p.png", "https://cdn.test/m.jpg"],
        "generated_image": "https://cdn.test/generated.png",
        "generated_video": None,
        "is_generating": False,
        "is_published": False,
        "error": None,
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    fake_db.tables.setdefault("projects", []).append(row)
    return row


@pytest.fixture
def client(service):
    app.dependency_overrides[get_current_user_id] = lambda: USER_ID
    app.dependency_overrides[get_project_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(service):
    app.dependency_overrides[get_project_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
