"""Tests for API routes."""

import base64
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from image_generator import ReferenceImage, SynthesisOutcome
from pipeline import GenerationResult, GenerationTimeoutError, style_prompt
from services.set_store import SaveResult, SetStore
from conftest import make_png


STYLE_B64 = base64.b64encode(b"style-bytes").decode()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


@pytest.fixture
def mock_pipeline():
    """Create a mock generation pipeline."""
    pipeline = MagicMock()
    pipeline.generate_asset_set = AsyncMock()
    pipeline.generate_single = AsyncMock()
    pipeline.generate_batch = AsyncMock()
    return pipeline


@pytest.fixture
def store(temp_dir):
    return SetStore(temp_dir, url_prefix="/files")


@pytest.fixture
def client(mock_pipeline, store, monkeypatch):
    """Create test client with mocked dependencies."""
    # Create fresh app to avoid running the real lifespan
    app = FastAPI()

    # server.app builds the app at import time and pulls in the routes module
    from server.app import install_error_handlers
    import server.routes as routes_module

    monkeypatch.setattr(routes_module, "get_pipeline", lambda: mock_pipeline)
    monkeypatch.setattr(routes_module, "get_store", lambda: store)

    install_error_handlers(app)
    app.include_router(routes_module.router)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


class TestInfoEndpoints:
    """Tests for health, presets and usage endpoints."""

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_presets(self, client):
        presets = {p["name"]: p for p in client.get("/api/presets").json()}
        assert presets["font"]["count"] == 26
        assert presets["gameAssets"]["prompt"] == "game assets"

    def test_describe_generation(self, client):
        data = client.get("/api/generate").json()
        assert data["message"] == "Image generation API is running"
        assert set(data["endpoints"]) == {"assetGeneration", "single", "batch"}


class TestAssetGeneration:
    """Tests for the asset set flow on /api/generate."""

    def test_success_response_shape(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(
            success=True,
            definitions=["a carrot", "a leek"],
            original_prompt="vegetables",
            images=[
                SynthesisOutcome(0, True, style_prompt("a carrot"), image_bytes=b"img0"),
                SynthesisOutcome(1, False, style_prompt("a leek"), error_message="Failed after 2 retries: busy",
                                 attempts=3),
            ],
        )

        response = client.post("/api/generate", json={
            "styleImages": [{"data": STYLE_B64, "mimeType": "image/png"}],
            "prompt": "vegetables",
            "count": 2,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["definitions"] == ["a carrot", "a leek"]
        assert data["originalPrompt"] == "vegetables"
        assert data["totalGenerated"] == 2
        assert data["successfulImages"] == 1
        assert data["failedImages"] == 1
        assert "savedImages" not in data
        assert data["images"][0]["imageData"] == b64(b"img0")
        assert "error" not in data["images"][0]
        assert data["images"][1]["error"] == "Failed after 2 retries: busy"
        assert data["images"][1]["attempts"] == 3

        kwargs = mock_pipeline.generate_asset_set.call_args.kwargs
        assert kwargs["prompt"] == "vegetables"
        assert kwargs["count"] == 2
        assert kwargs["style_images"] == (ReferenceImage(b"style-bytes", "image/png"),)
        assert kwargs["attachments"] == ()

    def test_preset_resolves_prompt_and_count(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(success=True, definitions=[], images=[])

        client.post("/api/generate", json={"styleImages": [{"data": STYLE_B64}], "preset": "font"})

        kwargs = mock_pipeline.generate_asset_set.call_args.kwargs
        assert kwargs["prompt"] == "letters of the alphabet"
        assert kwargs["count"] == 26

    def test_data_url_mime_type_wins(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(success=True, definitions=[], images=[])

        client.post("/api/generate", json={
            "styleImages": [{"data": f"data:image/jpeg;base64,{STYLE_B64}", "mimeType": "image/png"}],
            "prompt": "x",
        })

        style = mock_pipeline.generate_asset_set.call_args.kwargs["style_images"][0]
        assert style.mime_type == "image/jpeg"

    def test_saved_images_reported_with_set_id(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(
            success=True,
            definitions=["a"],
            original_prompt="p",
            images=[SynthesisOutcome(0, True, style_prompt("a"), image_bytes=b"x")],
            saved_images=[SaveResult(image_id="img1", prompt="a", url="/files/sets/s1/img1.png")],
        )

        data = client.post("/api/generate", json={
            "styleImages": [{"data": STYLE_B64}], "prompt": "p", "setId": "s1",
        }).json()

        assert data["savedImages"] == [{"id": "img1", "url": "/files/sets/s1/img1.png", "prompt": "a"}]
        assert mock_pipeline.generate_asset_set.call_args.kwargs["set_id"] == "s1"

    def test_saved_images_null_when_nothing_saved(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(
            success=True, definitions=["a"], original_prompt="p", images=[],
        )

        data = client.post("/api/generate", json={
            "styleImages": [{"data": STYLE_B64}], "prompt": "p", "setId": "s1",
        }).json()

        assert data["savedImages"] is None

    def test_expansion_failure(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.return_value = GenerationResult(
            success=False,
            original_prompt="p",
            error="Failed to generate definitions: No text response received from the text model",
            stage="definitions",
        )

        response = client.post("/api/generate", json={"styleImages": [{"data": STYLE_B64}], "prompt": "p"})

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Failed to generate definitions: No text response received from the text model",
            "stage": "definitions",
        }

    def test_attachments_are_loaded(self, client, mock_pipeline, store):
        attachment_id = store.save_attachment("proj1", b"att-bytes", "image/jpeg")
        mock_pipeline.generate_asset_set.return_value = GenerationResult(success=True, definitions=[], images=[])

        client.post("/api/generate", json={
            "styleImages": [{"data": STYLE_B64}],
            "prompt": "p",
            "projectId": "proj1",
            "attachmentIds": [attachment_id],
        })

        attachments = mock_pipeline.generate_asset_set.call_args.kwargs["attachments"]
        assert attachments == (ReferenceImage(b"att-bytes", "image/jpeg"),)

    def test_missing_attachment_is_404(self, client, mock_pipeline):
        response = client.post("/api/generate", json={
            "styleImages": [{"data": STYLE_B64}],
            "prompt": "p",
            "projectId": "proj1",
            "attachmentIds": ["missing"],
        })

        assert response.status_code == 404
        assert response.json()["success"] is False
        mock_pipeline.generate_asset_set.assert_not_called()

    def test_timeout_is_504(self, client, mock_pipeline):
        mock_pipeline.generate_asset_set.side_effect = GenerationTimeoutError("too slow")

        response = client.post("/api/generate", json={"styleImages": [{"data": STYLE_B64}], "prompt": "p"})

        assert response.status_code == 504
        assert response.json() == {"success": False, "error": "Image generation timed out"}


class TestSingleAndBatch:
    """Tests for the single image and batch flows."""

    def test_single_image(self, client, mock_pipeline):
        mock_pipeline.generate_single.return_value = SynthesisOutcome(
            0, True, "a cat", image_bytes=b"cat", diagnostic_text="meow",
        )

        response = client.post("/api/generate", json={"prompt": " a cat ", "imageData": STYLE_B64})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "imageData": b64(b"cat"),
            "textResponse": "meow",
            "originalPrompt": "a cat",
            "attempts": 1,
        }
        args = mock_pipeline.generate_single.call_args.args
        assert args[0] == "a cat"
        assert args[1] == (ReferenceImage(b"style-bytes", "image/png"),)

    def test_single_image_failure_is_still_200(self, client, mock_pipeline):
        mock_pipeline.generate_single.return_value = SynthesisOutcome.failure(0, "a cat", "No response parts received")

        response = client.post("/api/generate", json={"prompt": "a cat", "imageData": STYLE_B64})

        assert response.status_code == 200
        assert response.json()["error"] == "No response parts received"

    def test_batch(self, client, mock_pipeline):
        mock_pipeline.generate_batch.return_value = GenerationResult(
            success=True,
            images=[SynthesisOutcome(0, True, "a", image_bytes=b"a"), SynthesisOutcome(1, True, "b", image_bytes=b"b")],
        )

        response = client.post("/api/generate", json={
            "requests": [{"prompt": "a", "imageData": STYLE_B64}, {"prompt": "b"}],
            "maxConcurrency": 2,
        })

        data = response.json()
        assert data["totalGenerated"] == 2
        assert "definitions" not in data
        requests, max_concurrency = mock_pipeline.generate_batch.call_args.args
        assert [r.prompt for r in requests] == ["a", "b"]
        assert requests[0].reference_images == (ReferenceImage(b"style-bytes", "image/png"),)
        assert requests[1].reference_images == ()
        assert max_concurrency == 2


class TestRequestErrors:
    """Tests for malformed requests."""

    def test_unknown_shape_is_400(self, client):
        response = client.post("/api/generate", json={"count": 3})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "Invalid request format" in body["error"]

    def test_missing_prompt_is_400(self, client):
        response = client.post("/api/generate", json={"styleImages": [{"data": STYLE_B64}]})

        assert response.status_code == 400
        assert "Prompt is required" in response.json()["error"]

    def test_invalid_json(self, client):
        response = client.post(
            "/api/generate", content=b"{not json", headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Request body must be valid JSON"}

    def test_invalid_base64_is_400(self, client, mock_pipeline):
        response = client.post("/api/generate", json={"styleImages": [{"data": "%%%"}], "prompt": "p"})

        assert response.status_code == 400
        assert "not valid base64" in response.json()["error"]
        mock_pipeline.generate_asset_set.assert_not_called()

    def test_unexpected_error_is_500(self, client, mock_pipeline):
        mock_pipeline.generate_single.side_effect = RuntimeError("kaboom")

        response = client.post("/api/generate", json={"prompt": "a cat", "imageData": STYLE_B64})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}


class TestSetEndpoints:
    """Tests for set and attachment endpoints."""

    def test_save_and_get_set(self, client, store):
        response = client.post("/api/sets/s1/images", json={
            "images": [{"imageData": b64(make_png()), "prompt": "a red square"}],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["errors"] == []
        assert data["savedImages"][0]["url"].startswith("/files/sets/s1/")

        set_data = client.get("/api/sets/s1").json()["set"]
        assert set_data["id"] == "s1"
        assert set_data["images"][0]["prompt"] == "a red square"

    def test_save_reports_per_image_errors(self, client):
        response = client.post("/api/sets/s1/images", json={
            "images": [{"imageData": b64(b"nope"), "prompt": "bad"}, {"imageData": b64(make_png()), "prompt": "ok"}],
        })

        data = response.json()
        assert data["success"] is False
        assert len(data["savedImages"]) == 1
        assert len(data["errors"]) == 1

    def test_save_runs_in_worker_thread(self, client, store, monkeypatch):
        import server.routes as routes_module

        threads = {}
        original_save = store.save_images

        def get_store():
            threads["handler"] = threading.get_ident()
            return store

        def save_images(set_id, images):
            threads["store"] = threading.get_ident()
            return original_save(set_id, images)

        monkeypatch.setattr(routes_module, "get_store", get_store)
        monkeypatch.setattr(store, "save_images", save_images)

        response = client.post("/api/sets/s1/images", json={"images": [{"imageData": b64(make_png())}]})

        assert response.json()["success"] is True
        assert threads["store"] != threads["handler"]

    def test_save_invalid_set_id(self, client):
        response = client.post("/api/sets/bad.id/images", json={"images": [{"imageData": b64(make_png())}]})
        assert response.status_code == 400

    def test_get_missing_set(self, client):
        response = client.get("/api/sets/missing")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Set not found"}

    def test_create_set(self, client):
        response = client.post("/api/projects/proj1/sets", json={"name": "Fruit"})

        data = response.json()
        assert data["success"] is True
        assert data["set"]["projectId"] == "proj1"
        assert data["set"]["name"] == "Fruit"

    def test_create_set_blank_name(self, client):
        response = client.post("/api/projects/proj1/sets", json={"name": "   "})
        assert response.status_code == 400

    def test_add_attachment(self, client, store):
        response = client.post("/api/projects/proj1/attachments", json={"data": STYLE_B64, "mimeType": "image/webp"})

        data = response.json()
        assert data["success"] is True
        reference = store.load_attachment("proj1", data["attachmentId"])
        assert reference == ReferenceImage(b"style-bytes", "image/webp")
