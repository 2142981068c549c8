import json
from unittest.mock import AsyncMock, patch
from urllib.parse import urlparse

import main
from conftest import SAMPLE_INSTRUCTION, llm_reply, make_image_bytes


def _upload(api, image=None, instruction=None, filter_settings=None, content_type="image/jpeg"):
    files = {"image": ("photo.jpg", image, content_type)} if image is not None else None
    data = {}
    if instruction is not None:
        data["instruction"] = instruction
    if filter_settings is not None:
        data["filterSettings"] = json.dumps(filter_settings)
    return api.post("/api/process-image", files=files, data=data)


class TestValidation:

    def test_missing_image(self, api, mock_llm):
        resp = _upload(api, instruction="add title HELLO")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Image and instruction are required"}
        mock_llm.create.assert_not_awaited()

    def test_missing_instruction(self, api, mock_llm, jpeg_bytes):
        resp = _upload(api, image=jpeg_bytes)
        assert resp.status_code == 400
        assert isinstance(resp.json()["error"], str)

    def test_blank_instruction(self, api, mock_llm, jpeg_bytes):
        resp = _upload(api, image=jpeg_bytes, instruction="   ")
        assert resp.status_code == 400

    def test_non_image_upload(self, api, mock_llm):
        resp = _upload(api, image=b"hello", instruction="x", content_type="text/plain")
        assert resp.status_code == 415
        assert "error" in resp.json()

    def test_image_sent_as_text_field(self, api, mock_llm):
        resp = api.post("/api/process-image", data={"image": "abc", "instruction": "x"})
        assert resp.status_code == 400
        body = resp.json()
        assert set(body) == {"error"}
        assert "image" in body["error"]
        mock_llm.create.assert_not_awaited()

    def test_bad_filter_settings(self, api, mock_llm, jpeg_bytes):
        resp = api.post(
            "/api/process-image",
            files={"image": ("photo.jpg", jpeg_bytes, "image/jpeg")},
            data={"instruction": "x", "filterSettings": "{oops"},
        )
        assert resp.status_code == 400


class TestProcessImage:

    def test_end_to_end_hello(self, api, mock_llm, jpeg_bytes):
        resp = _upload(api, image=jpeg_bytes, instruction="add title HELLO")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["metadata"]["width"] == 1280
        assert body["metadata"]["height"] == 720
        assert body["metadata"]["format"] == "jpeg"
        assert body["metadata"]["size"] > 0

        path = urlparse(body["thumbnailUrl"]).path
        assert path.startswith("/static/thumbnails/thumbnail-")
        stored = main.STORAGE_DIR / path[len("/static/"):]
        assert stored.read_bytes()[:2] == b"\xff\xd8"
        served = api.get(path)
        assert served.status_code == 200

    def test_prompt_carries_source_metadata(self, api, mock_llm):
        _upload(api, image=make_image_bytes(800, 600, "PNG"), instruction="japan trip", content_type="image/png")
        prompt = mock_llm.create.await_args.kwargs["messages"][1]["content"]
        assert "Image Metadata: 800x600 png" in prompt

    def test_filter_settings_reach_prompt(self, api, mock_llm, jpeg_bytes):
        resp = _upload(api, image=jpeg_bytes, instruction="x", filter_settings={"contrast": True, "addEmoji": True})
        assert resp.status_code == 200
        prompt = mock_llm.create.await_args.kwargs["messages"][1]["content"]
        assert 'Add exactly one overlay of type "emoji"' in prompt

    def test_llm_failure_is_a_server_error(self, api, mock_llm, jpeg_bytes):
        mock_llm.create.side_effect = RuntimeError("401 invalid api key")
        resp = _upload(api, image=jpeg_bytes, instruction="x")
        assert resp.status_code == 500
        assert resp.json() == {"error": "401 invalid api key"}
        assert mock_llm.create.await_count == 1

    def test_overloaded_llm_gives_up_after_retries(self, api, mock_llm, jpeg_bytes):
        mock_llm.create.side_effect = RuntimeError("model overloaded")
        with patch("main.asyncio.sleep", new_callable=AsyncMock):
            resp = _upload(api, image=jpeg_bytes, instruction="x")
        assert resp.status_code == 500
        assert "overloaded" in resp.json()["error"]
        assert mock_llm.create.await_count == main.LLM_MAX_RETRIES

    def test_incomplete_llm_json(self, api, mock_llm, jpeg_bytes):
        mock_llm.create.return_value = llm_reply({"base": SAMPLE_INSTRUCTION["base"]})
        resp = _upload(api, image=jpeg_bytes, instruction="x")
        assert resp.status_code == 500
        assert "enhancements" in resp.json()["error"]

    def test_upload_failure(self, api, mock_llm, jpeg_bytes):
        with patch("main._upload_bytes", new=AsyncMock(side_effect=OSError("disk full"))):
            resp = _upload(api, image=jpeg_bytes, instruction="x")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Upload failed: disk full"

    def test_undecodable_image(self, api, mock_llm):
        resp = _upload(api, image=b"\x00\x01\x02 not an image", instruction="x")
        assert resp.status_code == 500
        mock_llm.create.assert_not_awaited()


def test_health(api):
    body = api.get("/health").json()
    assert body["status"] == "healthy"
    assert body["storage_mode"] == "local"


class TestUploadForm:

    def test_form_posts_to_the_api(self, api):
        resp = api.get("/")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        html = resp.text
        assert 'action="/api/process-image"' in html
        assert 'name="image"' in html and 'name="instruction"' in html
        for toggle in ("contrast", "brightness", "saturation", "addEmoji"):
            assert f'name="{toggle}"' in html
        assert '["contrast", "brightness", "saturation", "addEmoji"]' in html

    def test_form_payload_is_accepted(self, api, mock_llm, jpeg_bytes):
        settings = {"contrast": True, "brightness": False, "saturation": True, "addEmoji": False}
        resp = _upload(api, image=jpeg_bytes, instruction="add title HELLO", filter_settings=settings)
        assert resp.status_code == 200
        assert urlparse(resp.json()["thumbnailUrl"]).path.startswith("/static/thumbnails/")
