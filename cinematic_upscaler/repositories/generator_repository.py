from __future__ import annotations
import logging
import os
from typing import Any

from dotenv import load_dotenv

from ..models.diffusion_engine import DiffusionEngine
from ..pipeline.options import GenerationParams

load_dotenv()

logger = logging.getLogger(__name__)


class GeneratorRepository:
    """
    Thin wrapper around DiffusionEngine. The engine (and its weights) is only
    created on first use and then shared process-wide by the singleton.
    """

    def __init__(self, model_id: str | None = None, engine_factory=DiffusionEngine):
        self.model_id = model_id or os.getenv("DIFFUSION_MODEL_ID", "stabilityai/sd-turbo")
        self._engine_factory = engine_factory
        self._engine = None

    @property
    def device(self) -> str:
        if self._engine is not None:
            return self._engine.device
        return DiffusionEngine.pick_device()

    @property
    def engine(self):
        if self._engine is None:
            self._engine = self._engine_factory(self.model_id)
        return self._engine

    def warm_up(self) -> None:
        _ = self.engine

    def infer(self, prompt: str, params: GenerationParams) -> Any:
        logger.info(f"Generating {params.width}x{params.height} base image "
                    f"({params.num_inference_steps} steps, guidance {params.guidance_scale})")
        return self.engine.generate(
            prompt,
            width=params.width,
            height=params.height,
            guidance_scale=params.guidance_scale,
            num_inference_steps=params.num_inference_steps,
            negative_prompt=params.negative_prompt,
            seed=params.seed,
        )
