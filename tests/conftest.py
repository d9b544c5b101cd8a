"""Shared test fixtures for all test modules."""

import asyncio
import io
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Keep stored sets created by the app out of the source tree
os.environ.setdefault("STYLESET_DATA_DIR", tempfile.mkdtemp(prefix="styleset-tests-"))

from image_generator import SynthesisOutcome, SynthesisRequest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_png(color: str = "red", size: tuple[int, int] = (4, 4)) -> bytes:
    """Encode a tiny solid-color PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes():
    """A small valid PNG image."""
    return make_png()


def make_requests(count: int) -> list[SynthesisRequest]:
    """Build numbered synthesis requests."""
    return [SynthesisRequest(prompt=f"prompt {i}") for i in range(count)]


class FakeSynthesizer:
    """Scripted synthesizer that records calls and peak concurrency.

    ``failures`` maps a prompt to how many times it fails before succeeding
    (use a large number for "always fails"). ``raises`` lists prompts whose
    calls raise instead of returning a failed outcome.
    """

    def __init__(self, failures: dict[str, int] | None = None, raises: set[str] | None = None, delay: float = 0.01):
        self.failures = dict(failures or {})
        self.raises = set(raises or ())
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def __call__(self, request: SynthesisRequest, original_index: int = 0) -> SynthesisOutcome:
        self.calls.append(request.prompt)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if request.prompt in self.raises:
            raise RuntimeError(f"connection reset for {request.prompt}")

        remaining = self.failures.get(request.prompt, 0)
        if remaining > 0:
            self.failures[request.prompt] = remaining - 1
            return SynthesisOutcome.failure(original_index, request.prompt, "quota exceeded")

        return SynthesisOutcome(
            original_index=original_index,
            success=True,
            originating_prompt=request.prompt,
            image_bytes=f"image:{request.prompt}".encode(),
        )

    def call_count(self, prompt: str) -> int:
        return self.calls.count(prompt)


@pytest.fixture
def fake_synthesizer():
    """A synthesizer that always succeeds."""
    return FakeSynthesizer()


class RecordingSleep:
    """Sleep replacement that records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


def make_chat_client(content: str | None = None, error: Exception | None = None) -> MagicMock:
    """Build a fake AsyncOpenAI client returning ``content`` or raising ``error``."""
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
        )
        client.chat.completions.create = AsyncMock(return_value=response)
    return client


def make_genai_response(parts: list | None) -> SimpleNamespace:
    """Build a google-genai style response with the given parts."""
    if parts is None:
        return SimpleNamespace(candidates=[])
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def text_part(text: str) -> SimpleNamespace:
    return SimpleNamespace(text=text, inline_data=None)


def image_part(data: bytes, mime_type: str = "image/png") -> SimpleNamespace:
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))


def make_genai_client(response=None, error: Exception | None = None) -> MagicMock:
    """Build a fake genai.Client whose async generate_content returns ``response``."""
    client = MagicMock()
    if error is not None:
        client.aio.models.generate_content = AsyncMock(side_effect=error)
    else:
        client.aio.models.generate_content = AsyncMock(return_value=response)
    return client
