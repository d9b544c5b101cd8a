#!/usr/bin/env python3
"""CLI entry point for generating styled image sets."""

import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import click

from config import paths, settings
from batch_orchestrator import ProgressCallback
from definition_generator import DefinitionGenerator, PRESETS, ExpansionError
from image_generator import ImageGenerator, ReferenceImage
from pipeline import GenerationPipeline, GenerationResult, GenerationTimeoutError
from utils import guess_mime_type, write_png_with_metadata

logger = logging.getLogger(__name__)


def cli_progress(stage: str, current: int = 0, total: int = 0, message: str = "") -> None:
    """Print progress messages to stderr."""
    if message:
        click.echo(f"  [{stage}] {message}", err=True)


def load_style_images(style_paths: tuple[Path, ...]) -> tuple[ReferenceImage, ...]:
    """Read reference images from disk."""
    return tuple(
        ReferenceImage(data=path.read_bytes(), mime_type=guess_mime_type(path))
        for path in style_paths
    )


def write_results(result: GenerationResult, output: Path) -> list[Path]:
    """Write generated images and a summary file into the output directory.

    Images are re-encoded as PNG with the prompt embedded as a text chunk.
    Bytes that cannot be decoded are skipped.

    Returns:
        Paths of the written images
    """
    output.mkdir(parents=True, exist_ok=True)
    written = []
    for outcome in result.images:
        if outcome.success and outcome.image_bytes:
            image_path = output / f"image_{outcome.original_index:03d}.png"
            metadata = {"prompt": outcome.originating_prompt, "index": outcome.original_index}
            try:
                write_png_with_metadata(outcome.image_bytes, image_path, metadata)
            except ValueError as e:
                logger.warning(f"Skipping image {outcome.original_index}: {e}")
                continue
            written.append(image_path)

    summary = {
        "original_prompt": result.original_prompt,
        "definitions": result.definitions,
        "created_at": datetime.now().isoformat(),
        "total_generated": result.total_generated,
        "successful_images": result.successful_images,
        "failed_images": result.failed_images,
        "images": [
            {
                "index": outcome.original_index,
                "success": outcome.success,
                "prompt": outcome.originating_prompt,
                "attempts": outcome.attempts,
                "error": outcome.error_message,
                "text_response": outcome.diagnostic_text,
            }
            for outcome in result.images
        ],
    }
    (output / "summary.json").write_text(json.dumps(summary, indent=2))
    return written


def build_pipeline(
    max_concurrency: int | None,
    retries: int | None,
    backoff_ms: int | None,
    on_progress: ProgressCallback | None = None,
) -> GenerationPipeline:
    """Build a pipeline from settings with CLI overrides."""
    batch = settings.batch
    overrides = {
        "max_concurrency": max_concurrency,
        "max_retry_rounds": retries,
        "base_backoff_ms": backoff_ms,
    }
    batch = replace(batch, **{key: value for key, value in overrides.items() if value is not None})

    return GenerationPipeline(
        definition_generator=DefinitionGenerator(settings.text_model),
        synthesizer=ImageGenerator(settings.image_model),
        batch_config=batch,
        on_progress=on_progress,
    )


@click.command()
@click.option(
    '-p', '--prompt',
    default=None,
    help='Creative prompt to expand into a set of images'
)
@click.option(
    '-s', '--style',
    'style_paths',
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Style reference image (repeat for several)'
)
@click.option(
    '-n', '--count',
    default=None,
    type=int,
    help='Number of definitions to generate (default: model decides)'
)
@click.option(
    '--preset',
    default=None,
    type=click.Choice(sorted(PRESETS)),
    help='Use a preset prompt and count'
)
@click.option(
    '-o', '--output',
    type=click.Path(path_type=Path),
    help='Output directory (default: generated/runs/{timestamp}/)'
)
@click.option(
    '--max-concurrency',
    default=None,
    type=click.IntRange(min=1),
    help=f'Maximum concurrent image requests (default: {settings.batch.max_concurrency})'
)
@click.option(
    '--retries',
    default=None,
    type=click.IntRange(min=0),
    help=f'Retry rounds for failed images (default: {settings.batch.max_retry_rounds})'
)
@click.option(
    '--backoff-ms',
    default=None,
    type=click.IntRange(min=0),
    help=f'Delay before the first retry round (default: {settings.batch.base_backoff_ms})'
)
@click.option(
    '--dry-run',
    is_flag=True,
    help='Only generate and print definitions, no images'
)
@click.option(
    '-v', '--verbose',
    is_flag=True,
    help='Enable debug logging'
)
def main(
    prompt: str | None,
    style_paths: tuple[Path, ...],
    count: int | None,
    preset: str | None,
    output: Path | None,
    max_concurrency: int | None,
    retries: int | None,
    backoff_ms: int | None,
    dry_run: bool,
    verbose: bool,
):
    """
    Generate a set of styled images from one creative prompt.

    Example:
        python cli.py -p "vegetables in a garden" -s style.png -n 5
        python cli.py --preset font -s lettering.png
        python cli.py -p "game assets" --dry-run
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if preset:
        preset_config = PRESETS[preset]
        prompt = prompt or preset_config.prompt
        count = count or preset_config.count

    if not prompt:
        click.echo("Error: --prompt or --preset is required", err=True)
        sys.exit(1)

    if not dry_run and not style_paths:
        click.echo("Error: at least one --style image is required (or use --dry-run)", err=True)
        sys.exit(1)

    pipeline = build_pipeline(max_concurrency, retries, backoff_ms, on_progress=cli_progress)

    if dry_run:
        try:
            definitions = asyncio.run(pipeline.definition_generator.expand(prompt, count))
        except ExpansionError as e:
            click.echo(f"Error: Failed to generate definitions: {e}", err=True)
            sys.exit(1)
        click.echo(f"Generated {len(definitions)} definitions:\n")
        for definition in definitions:
            click.echo(definition)
        return

    style_images = load_style_images(style_paths)

    try:
        result = asyncio.run(pipeline.generate_asset_set(prompt, style_images, count=count))
    except GenerationTimeoutError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not result.success:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)

    if output is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output = paths.output_dir / timestamp

    written = write_results(result, output)

    for outcome in result.images:
        if not outcome.success:
            click.echo(f"  Failed #{outcome.original_index}: {outcome.error_message}", err=True)

    click.echo(
        f"\nGenerated {result.successful_images}/{result.total_generated} images "
        f"({len(written)} written) in: {output}"
    )
    if result.failed_images:
        sys.exit(2)


if __name__ == '__main__':
    main()
