from __future__ import annotations
import asyncio
import logging
from typing import Any, Protocol

from ..pipeline.options import GenerationParams
from ..repositories.generator_repository import GeneratorRepository

logger = logging.getLogger(__name__)


class BaseImageProducer(Protocol):
    """What the controller needs from whatever makes the base image."""

    device_label: str

    async def load(self) -> None: ...

    async def generate(self, prompt: str, params: GenerationParams) -> Any: ...


class BaseImageService:
    """
    Default producer backed by the diffusion model.
    Model loading and inference run in a worker thread so the event loop
    keeps serving status updates and cancellation.
    """

    def __init__(self, generator_repository: GeneratorRepository | None = None):
        self.generator_repository = generator_repository or GeneratorRepository()

    @property
    def device_label(self) -> str:
        return self.generator_repository.device.upper()

    async def load(self) -> None:
        await asyncio.to_thread(self.generator_repository.warm_up)

    async def generate(self, prompt: str, params: GenerationParams) -> Any:
        logger.info(f"Prompt: {prompt[:60]}...")
        return await asyncio.to_thread(self.generator_repository.infer, prompt, params)
