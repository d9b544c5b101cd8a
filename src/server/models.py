"""Pydantic models for the web server API."""

from typing import Annotated, Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    model_validator,
)
from pydantic.alias_generators import to_camel

from definition_generator import PRESETS

ID_PATTERN = r'^[A-Za-z0-9_-]{1,100}$'

INVALID_REQUEST_MESSAGE = (
    "Invalid request format. Expected either: "
    "1) Asset generation flow: { styleImages, prompt, count?|preset? }, "
    "2) Single image: { prompt, imageData|images }, or "
    "3) Batch requests: { requests }"
)


class ApiModel(BaseModel):
    """Base model using camelCase JSON field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImagePayload(ApiModel):
    """A base64 encoded image with its MIME type."""
    data: str = Field(..., min_length=1)
    mime_type: str = Field("image/png", pattern=r'^image/[\w.+-]+$')


# API Request Models

class AssetGenerationRequest(ApiModel):
    """Expand a prompt into definitions and render each in the given style."""
    style_images: list[ImagePayload] = Field(..., min_length=1)
    prompt: str | None = Field(None, max_length=5000)
    count: int | None = Field(None, ge=1, le=100)
    preset: str | None = None
    set_id: str | None = Field(None, pattern=ID_PATTERN)
    project_id: str | None = Field(None, pattern=ID_PATTERN)
    attachment_ids: list[Annotated[str, Field(pattern=ID_PATTERN)]] = Field(default_factory=list)
    max_concurrency: int | None = Field(None, ge=1, le=10)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_style_image(cls, data: Any) -> Any:
        # Older clients send one styleImage with a top-level mimeType.
        if isinstance(data, dict) and "styleImage" in data and "styleImages" not in data:
            data = dict(data)
            style_image = data.pop("styleImage")
            data["styleImages"] = [{
                "data": style_image,
                "mimeType": data.pop("mimeType", None) or "image/png",
            }]
        return data

    @model_validator(mode="after")
    def _check_prompt_and_preset(self) -> "AssetGenerationRequest":
        if self.preset is not None and self.preset not in PRESETS:
            raise ValueError(f"Unknown preset: {self.preset}. Choose from: {sorted(PRESETS)}")
        if not (self.prompt and self.prompt.strip()) and self.preset is None:
            raise ValueError("Prompt is required")
        if self.attachment_ids and not self.project_id:
            raise ValueError("projectId is required when attachmentIds are given")
        return self

    def resolved_prompt(self) -> str:
        """The prompt to expand, falling back to the preset's prompt."""
        if self.prompt and self.prompt.strip():
            return self.prompt.strip()
        return PRESETS[self.preset].prompt

    def resolved_count(self) -> int | None:
        """Explicit count wins over the preset's count."""
        if self.count is not None:
            return self.count
        if self.preset is not None:
            return PRESETS[self.preset].count
        return None


class SingleImageRequest(ApiModel):
    """Generate one image from a prompt and one or more reference images."""
    prompt: str = Field(..., min_length=1, max_length=5000)
    image_data: str | None = None
    images: list[ImagePayload] | None = None
    mime_type: str | None = Field(None, pattern=r'^image/[\w.+-]+$')

    @model_validator(mode="after")
    def _check_images(self) -> "SingleImageRequest":
        if not self.prompt.strip():
            raise ValueError("Prompt is required")
        if not self.image_data and not self.images:
            raise ValueError("imageData or images is required")
        return self

    def image_payloads(self, default_mime_type: str = "image/png") -> list[ImagePayload]:
        """All reference images, the single imageData first."""
        payloads = []
        if self.image_data:
            payloads.append(ImagePayload(data=self.image_data, mime_type=self.mime_type or default_mime_type))
        payloads.extend(self.images or [])
        return payloads


class BatchItem(ApiModel):
    """One entry of an explicit batch."""
    prompt: str = Field(..., min_length=1, max_length=5000)
    image_data: str | None = None
    images: list[ImagePayload] | None = None
    mime_type: str | None = Field(None, pattern=r'^image/[\w.+-]+$')

    def image_payloads(self, default_mime_type: str = "image/png") -> list[ImagePayload]:
        payloads = []
        if self.image_data:
            payloads.append(ImagePayload(data=self.image_data, mime_type=self.mime_type or default_mime_type))
        payloads.extend(self.images or [])
        return payloads


class BatchGenerationRequest(ApiModel):
    """Generate one image per explicit request."""
    requests: list[BatchItem] = Field(..., max_length=200)
    max_concurrency: int | None = Field(None, ge=1, le=10)


def _request_kind(value: Any) -> str | None:
    """Pick the request variant from the fields that identify it."""
    if isinstance(value, BaseModel):
        return {
            AssetGenerationRequest: "asset",
            SingleImageRequest: "single",
            BatchGenerationRequest: "batch",
        }.get(type(value))
    if not isinstance(value, dict):
        return None
    if "requests" in value:
        return "batch"
    if {"styleImages", "style_images", "styleImage"} & value.keys():
        return "asset"
    if "prompt" in value:
        return "single"
    return None


GenerationRequest = Annotated[
    Union[
        Annotated[AssetGenerationRequest, Tag("asset")],
        Annotated[SingleImageRequest, Tag("single")],
        Annotated[BatchGenerationRequest, Tag("batch")],
    ],
    Discriminator(
        _request_kind,
        custom_error_type="invalid_request_format",
        custom_error_message=INVALID_REQUEST_MESSAGE,
    ),
]

generation_request_adapter = TypeAdapter(GenerationRequest)


class SaveImageItem(ApiModel):
    """An already generated image to store in a set."""
    image_data: str = Field(..., min_length=1)
    prompt: str = ""


class SaveImagesRequest(ApiModel):
    """Request to store generated images in a set."""
    images: list[SaveImageItem] = Field(..., min_length=1)


class CreateSetRequest(ApiModel):
    """Request to create a set in a project."""
    name: str = Field(..., min_length=1, max_length=200)


class AttachmentRequest(ImagePayload):
    """Request to store a reference image for a project."""
    pass


# API Response Models

class ImageResult(ApiModel):
    """One generated image (or failure) in a response."""
    success: bool
    image_data: str | None = None
    text_response: str | None = None
    error: str | None = None
    original_prompt: str
    attempts: int = 1


class SavedImageInfo(ApiModel):
    """A stored image with its public URL."""
    id: str
    url: str
    prompt: str = ""


class GenerationResponse(ApiModel):
    """Response for asset and batch generation."""
    success: bool = True
    definitions: list[str] | None = None
    images: list[ImageResult]
    total_generated: int
    successful_images: int
    failed_images: int
    original_prompt: str | None = None
    saved_images: list[SavedImageInfo] | None = None


class ErrorResponse(ApiModel):
    """Error body returned for every failed request."""
    success: bool = False
    error: str
    stage: str | None = None


class SetResponse(ApiModel):
    """A set with its images."""
    id: str
    project_id: str | None
    name: str
    prompts: list[str]
    images: list[SavedImageInfo]


class AttachmentResponse(ApiModel):
    """Response after storing an attachment."""
    success: bool = True
    attachment_id: str


class PresetInfo(ApiModel):
    """A definition preset."""
    name: str
    count: int
    prompt: str
