"""API routes for the web server."""

import asyncio
import json
import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .app import get_pipeline, get_store
from .models import (
    AssetGenerationRequest,
    AttachmentRequest,
    AttachmentResponse,
    BatchGenerationRequest,
    CreateSetRequest,
    GenerationResponse,
    ImagePayload,
    ImageResult,
    PresetInfo,
    SaveImagesRequest,
    SavedImageInfo,
    SetResponse,
    SingleImageRequest,
    generation_request_adapter,
)

# Import from parent directory
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))
from config import settings
from definition_generator import PRESETS
from image_generator import ReferenceImage, SynthesisOutcome, SynthesisRequest
from pipeline import GenerationResult, GenerationTimeoutError
from services.set_store import AttachmentNotFoundError, SaveResult, SetNotFoundError, SetStoreError
from utils import decode_image_data, encode_image_data

logger = logging.getLogger(__name__)

router = APIRouter()


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------

def _decode_payload(payload: ImagePayload) -> ReferenceImage:
    """Decode one base64 payload into a reference image."""
    try:
        data, data_url_mime = decode_image_data(payload.data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReferenceImage(data=data, mime_type=data_url_mime or payload.mime_type)


def _decode_payloads(payloads: list[ImagePayload]) -> tuple[ReferenceImage, ...]:
    return tuple(_decode_payload(payload) for payload in payloads)


def _image_result(outcome: SynthesisOutcome) -> ImageResult:
    """Convert an outcome to its API shape, leaving out empty fields."""
    fields = {
        "success": outcome.success,
        "original_prompt": outcome.originating_prompt,
        "attempts": outcome.attempts,
    }
    if outcome.image_bytes is not None:
        fields["image_data"] = encode_image_data(outcome.image_bytes)
    if outcome.diagnostic_text is not None:
        fields["text_response"] = outcome.diagnostic_text
    if outcome.error_message is not None:
        fields["error"] = outcome.error_message
    return ImageResult(**fields)


def _saved_image_info(saved: SaveResult) -> SavedImageInfo:
    return SavedImageInfo(id=saved.image_id, url=saved.url, prompt=saved.prompt)


def _generation_response(result: GenerationResult, include_saved: bool = False) -> dict:
    fields = {
        "success": result.success,
        "images": [_image_result(outcome) for outcome in result.images],
        "total_generated": result.total_generated,
        "successful_images": result.successful_images,
        "failed_images": result.failed_images,
    }
    if result.definitions is not None:
        fields["definitions"] = result.definitions
    if result.original_prompt is not None:
        fields["original_prompt"] = result.original_prompt
    if include_saved:
        fields["saved_images"] = (
            [_saved_image_info(saved) for saved in result.saved_images]
            if result.saved_images is not None else None
        )
    return GenerationResponse(**fields).model_dump(by_alias=True, exclude_unset=True)


async def _parse_generation_request(request: Request):
    """Validate the body against the three request variants."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")

    try:
        return generation_request_adapter.validate_python(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


def _load_attachments(req: AssetGenerationRequest) -> tuple[ReferenceImage, ...]:
    if not req.attachment_ids:
        return ()
    store = get_store()
    try:
        return tuple(store.load_attachment(req.project_id, attachment_id) for attachment_id in req.attachment_ids)
    except AttachmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ----------------------------------------------------------------------------
# Generation Endpoints
# ----------------------------------------------------------------------------

@router.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


@router.get("/api/generate")
async def describe_generation():
    """Describe the accepted request shapes."""
    return {
        "message": "Image generation API is running",
        "endpoints": {
            "assetGeneration": (
                "POST with { styleImages: [{ data, mimeType }], prompt, count?|preset?, setId?, "
                "projectId?, attachmentIds?, maxConcurrency? } - Generate multiple styled assets"
            ),
            "single": "POST with { prompt, imageData|images, mimeType? } - Generate single image",
            "batch": (
                "POST with { requests: [{ prompt, imageData?|images?, mimeType? }], maxConcurrency? } "
                "- Batch generate images"
            ),
        },
    }


@router.get("/api/presets", response_model=list[PresetInfo])
async def list_presets():
    """List definition presets."""
    return [PresetInfo(name=p.name, count=p.count, prompt=p.prompt) for p in PRESETS.values()]


@router.post("/api/generate")
async def generate(request: Request):
    """Generate an asset set, a single image, or a batch of images."""
    req = await _parse_generation_request(request)
    pipeline = get_pipeline()

    try:
        if isinstance(req, AssetGenerationRequest):
            return await _generate_asset_set(req)
        if isinstance(req, SingleImageRequest):
            reference_images = _decode_payloads(req.image_payloads(settings.image_model.default_mime_type))
            outcome = await pipeline.generate_single(req.prompt.strip(), reference_images)
            return _image_result(outcome).model_dump(by_alias=True, exclude_unset=True)
        return await _generate_batch(req)
    except GenerationTimeoutError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=504, detail="Image generation timed out")


async def _generate_asset_set(req: AssetGenerationRequest):
    pipeline = get_pipeline()
    style_images = _decode_payloads(req.style_images)
    attachments = _load_attachments(req)

    result = await pipeline.generate_asset_set(
        prompt=req.resolved_prompt(),
        style_images=style_images,
        count=req.resolved_count(),
        set_id=req.set_id,
        attachments=attachments,
        max_concurrency=req.max_concurrency,
    )

    if not result.success:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": result.error, "stage": result.stage},
        )

    return _generation_response(result, include_saved=req.set_id is not None)


async def _generate_batch(req: BatchGenerationRequest):
    pipeline = get_pipeline()
    default_mime_type = settings.image_model.default_mime_type
    requests = [
        SynthesisRequest(
            prompt=item.prompt,
            reference_images=_decode_payloads(item.image_payloads(default_mime_type)),
        )
        for item in req.requests
    ]
    result = await pipeline.generate_batch(requests, req.max_concurrency)
    return _generation_response(result)


# ----------------------------------------------------------------------------
# Set & Attachment Endpoints
# ----------------------------------------------------------------------------

@router.post("/api/projects/{project_id}/sets")
async def create_set(project_id: str, req: CreateSetRequest):
    """Create an empty set in a project."""
    store = get_store()
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="Set name is required")
    try:
        record = store.create_set(name=req.name, project_id=project_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "message": "Set created successfully",
        "set": SetResponse(
            id=record.id,
            project_id=record.project_id,
            name=record.name,
            prompts=record.prompts,
            images=[],
        ).model_dump(by_alias=True),
    }


@router.get("/api/sets/{set_id}")
async def get_set(set_id: str):
    """Get a set with the URLs of its images."""
    store = get_store()
    try:
        record = store.get_set(set_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SetNotFoundError:
        raise HTTPException(status_code=404, detail="Set not found")

    images = [SavedImageInfo(**image) for image in store.image_urls(record)]
    return {
        "success": True,
        "set": SetResponse(
            id=record.id,
            project_id=record.project_id,
            name=record.name,
            prompts=record.prompts,
            images=images,
        ).model_dump(by_alias=True),
    }


@router.post("/api/sets/{set_id}/images")
async def save_images(set_id: str, req: SaveImagesRequest):
    """Store already generated images in a set."""
    store = get_store()

    images = []
    for item in req.images:
        try:
            data, _ = decode_image_data(item.image_data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        images.append((data, item.prompt))

    try:
        saved = await asyncio.to_thread(store.save_images, set_id, images)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SetStoreError as e:
        logger.warning(f"Failed to save images for set {set_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save images")

    return {
        "success": all(item.success for item in saved),
        "savedImages": [
            _saved_image_info(item).model_dump(by_alias=True) for item in saved if item.success
        ],
        "errors": [item.error for item in saved if not item.success],
    }


@router.post("/api/projects/{project_id}/attachments", response_model=AttachmentResponse)
async def add_attachment(project_id: str, req: AttachmentRequest):
    """Store a reference image for a project."""
    store = get_store()
    reference = _decode_payload(req)
    try:
        attachment_id = store.save_attachment(project_id, reference.data, reference.mime_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AttachmentResponse(attachment_id=attachment_id)
