"""Batched image generation with bounded concurrency and round-based retries.

Requests are tagged with their input position, attempted in chunks of at
most ``concurrency_limit`` concurrent calls, and failed items are retried in
later rounds with exponential backoff between rounds. The result always has
one outcome per request, in input order.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Protocol, Sequence

from image_generator import SynthesisOutcome, SynthesisRequest, Synthesizer, UNKNOWN_ERROR

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ProgressCallback(Protocol):
    """Protocol for progress callbacks."""

    def __call__(
        self,
        stage: str,
        current: int = 0,
        total: int = 0,
        message: str = "",
    ) -> None:
        """Report progress.

        Args:
            stage: Current stage (e.g., "generating_definitions", "generating_images")
            current: Current progress count
            total: Total items to process
            message: Human-readable progress message
        """
        ...


def null_progress(stage: str, current: int = 0, total: int = 0, message: str = "") -> None:
    """No-op progress callback."""
    pass


def backoff_delay_ms(base_backoff_ms: int, round_number: int) -> int:
    """Delay before retry round ``round_number`` (1-based); round 0 has none."""
    if round_number < 1:
        return 0
    return base_backoff_ms * 2 ** (round_number - 1)


def chunked(items: list, size: int) -> list[list]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


def retries_exhausted_message(max_retry_rounds: int, last_error: str | None) -> str:
    """Terminal error text for an item that never succeeded."""
    plural = "retry" if max_retry_rounds == 1 else "retries"
    message = f"Failed after {max_retry_rounds} {plural}"
    if last_error:
        message += f": {last_error}"
    return message


async def _attempt(
    synthesize: Synthesizer,
    request: SynthesisRequest,
    original_index: int,
) -> SynthesisOutcome:
    """Run one synthesis call, turning an unexpected exception into a failure."""
    try:
        outcome = await synthesize(request, original_index)
    except Exception as e:
        logger.warning(f"Synthesis call for item {original_index} raised: {e!r}")
        return SynthesisOutcome.failure(
            original_index, request.prompt, f"Batch processing error: {str(e) or UNKNOWN_ERROR}"
        )
    if outcome.original_index != original_index:
        outcome = replace(outcome, original_index=original_index)
    return outcome


async def run_batch(
    requests: Sequence[SynthesisRequest],
    synthesize: Synthesizer,
    concurrency_limit: int = 3,
    max_retry_rounds: int = 2,
    base_backoff_ms: int = 1000,
    sleep: Sleep = asyncio.sleep,
    on_progress: ProgressCallback | None = None,
) -> list[SynthesisOutcome]:
    """
    Generate images for every request, retrying failures in rounds.

    Round 0 attempts every request. Each following round retries only the
    items that are still failing, after sleeping
    ``base_backoff_ms * 2 ** (round - 1)`` milliseconds. Items still failing
    after round ``max_retry_rounds`` get a terminal failure outcome.

    Args:
        requests: Requests in the order results should be returned
        synthesize: Async callable producing one outcome per request
        concurrency_limit: Maximum number of calls in flight at once
        max_retry_rounds: Retry rounds after the first attempt (0 = single attempt)
        base_backoff_ms: Delay before the first retry round
        sleep: Awaitable sleep taking seconds (injectable for tests)
        on_progress: Callback receiving settled/total counts after each chunk

    Returns:
        One outcome per request, ``outcomes[i].original_index == i``

    Raises:
        ValueError: If concurrency_limit < 1 or a count/delay is negative
    """
    if concurrency_limit < 1:
        raise ValueError(f"concurrency_limit must be at least 1, got {concurrency_limit}")
    if max_retry_rounds < 0:
        raise ValueError(f"max_retry_rounds must not be negative, got {max_retry_rounds}")
    if base_backoff_ms < 0:
        raise ValueError(f"base_backoff_ms must not be negative, got {base_backoff_ms}")

    progress = on_progress or null_progress
    total = len(requests)
    if total == 0:
        return []

    results: list[SynthesisOutcome | None] = [None] * total
    attempts = [0] * total
    last_errors: list[str | None] = [None] * total
    pending: list[tuple[int, SynthesisRequest]] = list(enumerate(requests))

    round_number = 0
    while pending and round_number <= max_retry_rounds:
        if round_number > 0:
            delay_ms = backoff_delay_ms(base_backoff_ms, round_number)
            logger.warning(
                f"Retry round {round_number}/{max_retry_rounds} for {len(pending)} "
                f"item(s) after {delay_ms}ms"
            )
            await sleep(delay_ms / 1000)

        still_pending: list[tuple[int, SynthesisRequest]] = []
        for chunk in chunked(pending, concurrency_limit):
            outcomes = await asyncio.gather(
                *(_attempt(synthesize, request, index) for index, request in chunk)
            )
            # Written only after the whole chunk settled; indices are disjoint.
            for (index, request), outcome in zip(chunk, outcomes):
                attempts[index] += 1
                if outcome.success:
                    results[index] = outcome.with_attempts(attempts[index])
                else:
                    last_errors[index] = outcome.error_message
                    still_pending.append((index, request))

            settled = sum(1 for r in results if r is not None)
            progress(
                "generating_images", settled, total,
                f"Round {round_number}: {settled}/{total} images generated",
            )

        pending = still_pending
        round_number += 1

    for index, request in pending:
        results[index] = SynthesisOutcome(
            original_index=index,
            success=False,
            originating_prompt=request.prompt,
            error_message=retries_exhausted_message(max_retry_rounds, last_errors[index]),
            attempts=attempts[index],
        )

    if pending:
        logger.warning(f"{len(pending)}/{total} item(s) failed after {max_retry_rounds} retry round(s)")

    return results
