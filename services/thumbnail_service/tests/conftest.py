# services/thumbnail_service/tests/conftest.py
from __future__ import annotations

# Import/bootstrap so "import main" works when running pytest from repo root
import io
import json
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

TESTS_DIR = Path(__file__).resolve().parent  # .../services/thumbnail_service/tests
SERVICE_DIR = TESTS_DIR.parent  # .../services/thumbnail_service

if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))

# The service refuses to start without credentials; tests never reach the network.
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ["STORAGE_MODE"] = "local"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="thumbnail-tests-")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")
os.environ["INSTRUCTION_MODEL"] = "gpt-4o-mini"
os.environ["INSTRUCTION_ATTACH_IMAGE"] = "false"
os.environ["LLM_MAX_RETRIES"] = "3"

from PIL import Image  # noqa: E402


def make_image_bytes(width: int = 1280, height: int = 720, fmt: str = "JPEG", color=(40, 90, 160)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def llm_reply(payload) -> SimpleNamespace:
    """Shape of an openai chat completion response, enough for the service."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


SAMPLE_INSTRUCTION = {
    "base": {"size": {"width": 1280, "height": 720}, "format": "jpg"},
    "enhancements": {
        "filters": [
            {"type": "contrast", "value": 1.05},
            {"type": "brightness", "value": 5.0},
            {"type": "saturation", "value": 0.2},
        ],
        "overlays": [
            {
                "type": "text",
                "content": "HELLO",
                "position": {"x": 640, "y": 200},
                "style": {"font": "Impact", "size": 72, "color": "#FFFFFF", "outline": "#000000"},
            }
        ],
    },
}


@pytest.fixture
def sample_instruction() -> dict:
    return json.loads(json.dumps(SAMPLE_INSTRUCTION))


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def mock_llm():
    """Replace the OpenAI client; set ``mock_llm.create.return_value`` / ``side_effect`` per test."""
    import main

    create = AsyncMock(return_value=llm_reply(SAMPLE_INSTRUCTION))
    fake_client = Mock()
    fake_client.chat.completions.create = create
    with patch.object(main, "client", fake_client):
        yield SimpleNamespace(client=fake_client, create=create)


@pytest.fixture
def api():
    from fastapi.testclient import TestClient

    import main

    with TestClient(main.app) as c:
        yield c
