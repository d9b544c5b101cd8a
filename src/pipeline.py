"""Pipeline executor for styled image set generation.

Provides a unified interface for the generation flows that can be used by
both the CLI and the web server:

- asset sets: prompt -> definitions -> one styled image per definition
- single image: prompt + reference images -> one image
- batch: explicit list of requests -> one image per request
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from batch_orchestrator import ProgressCallback, Sleep, null_progress, run_batch
from config import BatchConfig
from definition_generator import DefinitionGenerator, ExpansionError
from image_generator import ReferenceImage, SynthesisOutcome, SynthesisRequest, Synthesizer
from services.set_store import SaveResult, SetStore, SetStoreError

logger = logging.getLogger(__name__)

STYLE_PROMPT_TEMPLATE = (
    "Create an image of: {definition}. "
    "Match the style and artistic approach of the reference image provided."
)


class GenerationTimeoutError(Exception):
    """The whole batch did not finish within the configured timeout."""
    pass


@dataclass
class GenerationResult:
    """Result of a generation flow."""

    success: bool
    images: list[SynthesisOutcome] = field(default_factory=list)
    definitions: list[str] | None = None
    original_prompt: str | None = None
    saved_images: list[SaveResult] | None = None
    error: str | None = None
    stage: str | None = None

    @property
    def total_generated(self) -> int:
        return len(self.images)

    @property
    def successful_images(self) -> int:
        return sum(1 for outcome in self.images if outcome.success)

    @property
    def failed_images(self) -> int:
        return sum(1 for outcome in self.images if not outcome.success)


def style_prompt(definition: str) -> str:
    """Turn a definition into the prompt sent with the style references."""
    return STYLE_PROMPT_TEMPLATE.format(definition=definition)


def combine_reference_images(
    style_images: Sequence[ReferenceImage],
    attachments: Sequence[ReferenceImage] = (),
) -> tuple[ReferenceImage, ...]:
    """Return a new tuple of style images followed by attachments.

    Neither input is modified.
    """
    return tuple(style_images) + tuple(attachments)


class GenerationPipeline:
    """Executor for image set generation flows."""

    def __init__(
        self,
        definition_generator: DefinitionGenerator,
        synthesizer: Synthesizer,
        batch_config: BatchConfig,
        store: SetStore | None = None,
        on_progress: ProgressCallback | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """Initialize the pipeline.

        Args:
            definition_generator: Expands prompts into definitions
            synthesizer: Generates one image per request
            batch_config: Concurrency, retry and timeout defaults
            store: Where successful images are saved (optional)
            on_progress: Callback for progress updates
            sleep: Sleep used between retry rounds
        """
        self.definition_generator = definition_generator
        self.synthesizer = synthesizer
        self.batch_config = batch_config
        self.store = store
        self.on_progress = on_progress or null_progress
        self.sleep = sleep
        self._background: set[asyncio.Task] = set()

    async def run_requests(
        self,
        requests: Sequence[SynthesisRequest],
        max_concurrency: int | None = None,
    ) -> list[SynthesisOutcome]:
        """Run a batch with configured retry settings and optional overall timeout.

        On timeout the in-flight batch keeps running in the background and its
        results are discarded.

        Raises:
            GenerationTimeoutError: If batch_timeout is set and exceeded
        """
        config = self.batch_config
        batch = run_batch(
            requests,
            self.synthesizer,
            concurrency_limit=max_concurrency or config.max_concurrency,
            max_retry_rounds=config.max_retry_rounds,
            base_backoff_ms=config.base_backoff_ms,
            sleep=self.sleep,
            on_progress=self.on_progress,
        )
        if config.batch_timeout is None:
            return await batch

        task = asyncio.ensure_future(batch)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=config.batch_timeout)
        except asyncio.TimeoutError:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            raise GenerationTimeoutError(
                f"Batch of {len(requests)} image(s) did not finish within {config.batch_timeout}s"
            ) from None

    async def generate_asset_set(
        self,
        prompt: str,
        style_images: Sequence[ReferenceImage],
        count: int | None = None,
        set_id: str | None = None,
        attachments: Sequence[ReferenceImage] = (),
        max_concurrency: int | None = None,
    ) -> GenerationResult:
        """
        Expand a prompt into definitions and generate one styled image per definition.

        Args:
            prompt: User's creative prompt
            style_images: Style reference images attached to every request
            count: Number of definitions wanted (model decides if None)
            set_id: Set to save successful images into
            attachments: Extra reference images (e.g. project attachments)
            max_concurrency: Override for the concurrency limit

        Returns:
            GenerationResult; success is False only when expansion failed
        """
        self.on_progress("generating_definitions", 0, 1, f"Generating definitions for: {prompt[:50]}...")

        try:
            definitions = await self.definition_generator.expand(prompt, count)
        except ExpansionError as e:
            logger.warning(f"Definition stage failed: {e}")
            return GenerationResult(
                success=False,
                original_prompt=prompt,
                error=f"Failed to generate definitions: {e}",
                stage="definitions",
            )

        self.on_progress("generating_definitions", 1, 1, f"Generated {len(definitions)} definitions")

        reference_images = combine_reference_images(style_images, attachments)
        requests = [
            SynthesisRequest(prompt=style_prompt(definition), reference_images=reference_images)
            for definition in definitions
        ]
        outcomes = await self.run_requests(requests, max_concurrency)

        result = GenerationResult(
            success=True,
            images=outcomes,
            definitions=definitions,
            original_prompt=prompt,
        )
        logger.info(
            f"Asset set for {prompt[:50]!r}: {result.successful_images}/{result.total_generated} succeeded"
        )

        if set_id:
            result.saved_images = await self.persist(set_id, definitions, outcomes)

        return result

    async def generate_single(
        self,
        prompt: str,
        reference_images: Sequence[ReferenceImage] = (),
    ) -> SynthesisOutcome:
        """Generate one image with a single attempt."""
        request = SynthesisRequest(prompt=prompt, reference_images=tuple(reference_images))
        return await self.synthesizer(request, 0)

    async def generate_batch(
        self,
        requests: Sequence[SynthesisRequest],
        max_concurrency: int | None = None,
    ) -> GenerationResult:
        """Generate one image per explicit request."""
        outcomes = await self.run_requests(requests, max_concurrency)
        return GenerationResult(success=True, images=outcomes)

    async def persist(
        self,
        set_id: str,
        definitions: list[str],
        outcomes: list[SynthesisOutcome],
    ) -> list[SaveResult] | None:
        """
        Save successful images into a set.

        Storage work (Pillow encoding, file writes) runs in a worker thread so
        other requests on the event loop keep going. Storage failures are
        logged and swallowed; they never change the generation result.

        Returns:
            Successfully saved images, or None if nothing could be saved
        """
        if self.store is None:
            logger.warning(f"No store configured, not saving images for set {set_id}")
            return None

        to_save = [
            (outcome.image_bytes, definitions[outcome.original_index])
            for outcome in outcomes
            if outcome.success and outcome.image_bytes
        ]

        try:
            saved = await asyncio.to_thread(self._save, set_id, definitions, to_save)
        except (SetStoreError, ValueError, OSError) as e:
            logger.warning(f"Failed to save images for set {set_id}: {e}")
            return None

        successful = [item for item in saved if item.success]
        if len(successful) < len(to_save):
            logger.warning(f"Saved {len(successful)}/{len(to_save)} images for set {set_id}")
        return successful or None

    def _save(
        self,
        set_id: str,
        definitions: list[str],
        to_save: list[tuple[bytes, str]],
    ) -> list[SaveResult]:
        self.store.record_prompts(set_id, definitions)
        return self.store.save_images(set_id, to_save) if to_save else []
