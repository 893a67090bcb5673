import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

# --- Centralized Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)-25s - %(levelname)-8s - %(message)s',
    datefmt='%H:%M:%S'
)

from ..models.pipeline_run import PipelineRun, Stage
from ..pipeline.controller import PipelineController
from ..pipeline.options import DEFAULT_PROMPT, PipelineOptions
from ..repositories.raster_repository import RasterRepository
from ..services.base_image_service import BaseImageService

logger = logging.getLogger(__name__)


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Generate, grade and upscale a cinematic render")
    p.add_argument("prompt", nargs="?", default=None, help="Text prompt (default: built-in scene)")
    p.add_argument("--out_dir", type=str, default=os.getenv("RESULTS_FOLDER", "data/renders"))

    g_out = p.add_argument_group("Output")
    g_out.add_argument("--width", type=int, default=None)
    g_out.add_argument("--height", type=int, default=None)
    g_out.add_argument("--quality", type=str, default=None, help="Resample quality tier")
    g_out.add_argument("--format", type=str, default=None, help="jpeg, png or webp")
    g_out.add_argument("--encode_quality", type=float, default=None)
    g_out.add_argument("--stem", type=str, default=None, help="Artifact file name stem")
    return p


def _print_status(run: PipelineRun) -> None:
    print(f"Status: {run.status}")


async def _render(prompt: str, options: PipelineOptions) -> PipelineRun:
    controller = PipelineController(BaseImageService())
    controller.subscribe(_print_status)
    return await controller.run(prompt, options)


def main() -> None:
    args = build_argparser().parse_args()

    overrides = {
        "target_width": args.width,
        "target_height": args.height,
        "resample_quality": int(args.quality) if args.quality and args.quality.isdigit() else args.quality,
        "encode_format": args.format,
        "encode_quality": args.encode_quality,
        "artifact_stem": args.stem,
    }
    options = PipelineOptions.from_env(**{k: v for k, v in overrides.items() if v is not None})

    run = asyncio.run(_render(args.prompt or DEFAULT_PROMPT, options))

    if run.stage is not Stage.DONE:
        if run.error is not None:
            logger.error(f"{run.error.kind}: {run.error.message}")
        sys.exit(1)

    path = RasterRepository.save_artifact(run.result, Path(args.out_dir) / run.artifact_name)
    print(f"Saved {run.mime_type} to {path}")


if __name__ == "__main__":
    main()
