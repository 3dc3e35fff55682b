#!/usr/bin/env python3
"""Render a pattern job to PNG.

Loads a pattern_job.v1 YAML/JSON file, runs it through the orchestrator on
the GPU (or the CPU reference path) and writes the image plus a metadata
file next to it.

Usage:
    # GPU (auto-selected CUDA/MPS device)
    python scripts/render_pattern.py --job configs/jobs/radial_demo.v1.yaml --output_dir outputs/radial

    # CPU reference renderer
    python scripts/render_pattern.py --job configs/jobs/radial_demo.v1.yaml --backend cpu

    # Override the noise expression and size
    python scripts/render_pattern.py --job configs/jobs/radial_demo.v1.yaml \
        --expression "sqrt(x*x + y*y) + sin(x * 0.05) * 20" --size 256,256

    # Use a stored noise expression
    python scripts/render_pattern.py --job configs/jobs/radial_demo.v1.yaml \
        --expression configs/noise/ripple_rings.v1.json

Outputs:
    - <job_id>.png: RGBA render
    - <job_id>.values.png: grayscale value plane
    - <job_id>.metadata.yaml: hashes, timings, profile
"""

import argparse
import logging
import sys
from pathlib import Path

from cnidaria.errors import PatternEngineError
from cnidaria.gpu.capability import GPUContext, capability_status
from cnidaria.orchestrator.job_runner import ErrorEvent, Orchestrator, ProgressEvent
from cnidaria.utils import fs, logging_config
from cnidaria.utils.hashing import hash_dict, sha256_file
from cnidaria.utils.validators import load_job_config, load_noise_expression


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Render a pattern job to PNG",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--job', type=str, required=True, help='Path to pattern_job.v1 YAML/JSON')
    parser.add_argument(
        '--output_dir',
        type=str,
        default='outputs/patterns',
        help='Output directory, default: outputs/patterns'
    )
    parser.add_argument(
        '--backend',
        type=str,
        choices=['gpu', 'cpu'],
        default=None,
        help='Override the job backend'
    )
    parser.add_argument('--device', type=str, default=None, help='Explicit torch device (cuda:0, mps)')
    parser.add_argument('--expression', type=str, default=None, help="Override the noise expression (inline text or a noise.v1 file)")
    parser.add_argument('--size', type=str, default=None, help='Override image size as W,H')
    parser.add_argument(
        '--force_reduced',
        action='store_true',
        help='Force Reduced dispatch mode'
    )
    parser.add_argument(
        '--allow_emulation',
        action='store_true',
        help='Allow the CPU as an emulated GPU device'
    )
    parser.add_argument('--timeout', type=float, default=30.0, help='Watchdog timeout per tile group (s)')
    parser.add_argument('--log_file', type=str, default=None, help='Also log to this file')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    return parser.parse_args()


def resolve_expression(text):
    """Return inline expression text, or the expression stored in a noise record file."""
    path = Path(text)
    if path.suffix.lower() in (".yaml", ".yml", ".json") and path.is_file():
        return load_noise_expression(path).expression
    return text


def apply_overrides(job, args):
    """Return a copy of ``job`` with CLI overrides applied."""
    updates = {}
    if args.backend is not None:
        updates['backend'] = args.backend
    if args.expression is not None:
        updates['expression'] = resolve_expression(args.expression)
    if args.size is not None:
        width, height = (int(v) for v in args.size.split(','))
        updates['width'] = width
        updates['height'] = height
    if not updates:
        return job
    return type(job).model_validate({**job.model_dump(by_alias=True), **updates})


def main():
    args = parse_args()

    log_level = 'DEBUG' if args.verbose else 'INFO'
    logging_config.setup_logging(log_level=log_level, log_file=args.log_file, context={"app": "render"})
    logging_config.install_excepthook()
    logger = logging.getLogger(__name__)

    try:
        job = apply_overrides(load_job_config(args.job), args)
    except (ValueError, FileNotFoundError) as e:
        logger.error("Could not load job: %s", e)
        return 2

    output_dir = fs.ensure_dir(args.output_dir)
    logger.info(f"Job {job.id}: {job.width}x{job.height}, backend={job.backend}")

    ctx = None
    if job.backend == 'gpu':
        try:
            ctx = GPUContext.init(
                args.device, force_reduced=args.force_reduced, allow_emulation=args.allow_emulation,
            )
        except PatternEngineError as e:
            logger.error("GPU unavailable: %s (use --backend cpu)", e)
            return 3

    try:
        with Orchestrator(ctx, watchdog_timeout_s=args.timeout) as orch:
            handle = orch.submit(job)
            last_pct = -1
            for event in handle.events():
                if isinstance(event, ProgressEvent):
                    pct = int(event.fraction * 100)
                    if pct // 10 != last_pct // 10:
                        logger.info(f"Progress: {pct}% ({event.done}/{event.total} px)")
                    last_pct = pct
                elif isinstance(event, ErrorEvent):
                    logger.error(f"Render failed: {event.error_type}: {event.message}")
                    return 1
            result = handle.result()
    except PatternEngineError as e:
        logger.error("Render rejected: %s", e)
        return 1
    finally:
        if ctx is not None:
            status = capability_status(ctx)
            ctx.teardown()

    image_path = result.save_png(output_dir / f"{result.job_id}.png")
    logger.info(f"Saved render: {image_path}")

    values_path = Path(output_dir) / f"{result.job_id}.values.png"
    fs.atomic_save_image(result.value_plane, values_path)
    logger.info(f"Saved value plane: {values_path}")

    metadata = result.metadata()
    metadata['job_file'] = str(args.job)
    metadata['job_sha256'] = hash_dict(job.model_dump(mode="json", by_alias=True))
    metadata['png_sha256'] = sha256_file(image_path)
    if ctx is not None:
        metadata['capability'] = status
    metadata_path = Path(output_dir) / f"{result.job_id}.metadata.yaml"
    fs.atomic_yaml_dump(metadata, metadata_path)
    logger.info(f"Saved metadata: {metadata_path}")

    if result.degenerate_count:
        logger.warning(f"{result.degenerate_count} degenerate samples fell back to curve index 0")
    logger.info("Render complete!")
    return 0


if __name__ == '__main__':
    sys.exit(main())
