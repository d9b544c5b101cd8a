"""Image generation wrapper for the Gemini image model (google-genai)."""

import logging
from dataclasses import dataclass, field, replace
from typing import Protocol

from google import genai
from google.genai import types

from config import ImageModelConfig

logger = logging.getLogger(__name__)

NO_RESPONSE_PARTS = "No response parts received"
UNKNOWN_ERROR = "Unknown error occurred"

# Cache for API clients (one per key)
_client_cache: dict[str, genai.Client] = {}


def clear_client_cache():
    """Drop all cached API clients."""
    _client_cache.clear()


def _get_client(api_key: str) -> genai.Client:
    """Get or create a cached client for an API key."""
    if api_key in _client_cache:
        return _client_cache[api_key]

    if not api_key:
        raise ValueError(
            "An API key is required for image generation. "
            "Set GEMINI_API_KEY or STYLESET_IMAGE_API_KEY."
        )

    client = genai.Client(api_key=api_key)
    _client_cache[api_key] = client
    return client


@dataclass(frozen=True)
class ReferenceImage:
    """An image attached to a request to condition style or content."""
    data: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class SynthesisRequest:
    """One prompt plus its reference images."""
    prompt: str
    reference_images: tuple[ReferenceImage, ...] = ()


@dataclass(frozen=True)
class SynthesisOutcome:
    """Result of one image generation attempt (or of a whole retried item)."""
    original_index: int
    success: bool
    originating_prompt: str
    image_bytes: bytes | None = None
    diagnostic_text: str | None = None
    error_message: str | None = None
    attempts: int = field(default=1, compare=False)

    @classmethod
    def failure(cls, original_index: int, prompt: str, error_message: str) -> "SynthesisOutcome":
        """Build a failed outcome."""
        return cls(
            original_index=original_index,
            success=False,
            originating_prompt=prompt,
            error_message=error_message,
        )

    def with_attempts(self, attempts: int) -> "SynthesisOutcome":
        return replace(self, attempts=attempts)


class Synthesizer(Protocol):
    """Anything that turns one request into one outcome without raising."""

    async def __call__(self, request: SynthesisRequest, original_index: int = 0) -> SynthesisOutcome:
        ...


def _build_contents(prompt: str, reference_images: tuple[ReferenceImage, ...]) -> list:
    """Prompt text first, then every reference image as inline data."""
    contents: list = [prompt]
    for image in reference_images:
        contents.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
    return contents


def _extract_parts(response) -> list:
    """Get the parts of the first candidate, tolerating missing fields."""
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    if content is None:
        return []
    return list(getattr(content, "parts", None) or [])


class ImageGenerator:
    """Generates images from a prompt and reference images."""

    def __init__(self, config: ImageModelConfig, client: genai.Client | None = None):
        """Initialize the generator.

        Args:
            config: Image model configuration
            client: Optional pre-built client (tests inject fakes here)
        """
        self.config = config
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = _get_client(self.config.api_key)
        return self._client

    async def synthesize(
        self,
        prompt: str,
        reference_images: tuple[ReferenceImage, ...] = (),
        original_index: int = 0,
    ) -> SynthesisOutcome:
        """
        Generate a single image. Never raises.

        Every failure (missing key, transport error, empty or malformed
        response) is returned as an outcome with ``success=False``.

        Args:
            prompt: Text description for the image
            reference_images: Images attached to the same request, in order
            original_index: Position of this request in its batch

        Returns:
            The outcome for this attempt
        """
        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.model,
                contents=_build_contents(prompt, tuple(reference_images)),
            )
            parts = _extract_parts(response)
        except Exception as e:
            logger.warning(f"Image generation failed for item {original_index}: {e}")
            return SynthesisOutcome.failure(original_index, prompt, str(e) or UNKNOWN_ERROR)

        image_bytes = None
        texts = []
        for part in parts:
            text = getattr(part, "text", None)
            inline_data = getattr(part, "inline_data", None)
            if text:
                texts.append(text)
            elif inline_data is not None and inline_data.data and image_bytes is None:
                image_bytes = inline_data.data

        if image_bytes is None and not texts:
            return SynthesisOutcome.failure(original_index, prompt, NO_RESPONSE_PARTS)

        return SynthesisOutcome(
            original_index=original_index,
            success=True,
            originating_prompt=prompt,
            image_bytes=image_bytes,
            diagnostic_text="\n".join(texts) if texts else None,
        )

    async def __call__(self, request: SynthesisRequest, original_index: int = 0) -> SynthesisOutcome:
        return await self.synthesize(request.prompt, request.reference_images, original_index)
