import asyncio

import numpy as np
import pytest

from cinematic_upscaler.models.raster_image import RasterImage
from cinematic_upscaler.pipeline.options import GenerationParams, PipelineOptions


def make_raster(width, height, rgba=(0, 0, 0, 255)):
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[...] = rgba
    return RasterImage(width=width, height=height, pixels=pixels)


class StubProducer:
    """Returns a fixed output after optional delays; records calls."""

    device_label = "CPU"

    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = []
        self.loaded = False

    async def load(self):
        self.loaded = True

    async def generate(self, prompt, params):
        self.calls.append((prompt, params))
        if self.error is not None:
            raise self.error
        return self.output


class BlockingProducer(StubProducer):
    """generate() blocks until released; `started` is set once it is entered."""

    def __init__(self, output=None):
        super().__init__(output=output)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt, params):
        self.calls.append((prompt, params))
        self.started.set()
        await self.release.wait()
        return self.output


@pytest.fixture
def gradient_image():
    """8x4 horizontal gray ramp, opaque."""
    ramp = np.linspace(0, 255, 8).astype(np.uint8)
    pixels = np.empty((4, 8, 4), dtype=np.uint8)
    pixels[..., 0] = ramp
    pixels[..., 1] = ramp
    pixels[..., 2] = ramp[::-1]
    pixels[..., 3] = 255
    return RasterImage(width=8, height=4, pixels=pixels)


@pytest.fixture
def small_options():
    return PipelineOptions(
        target_width=16,
        target_height=9,
        resample_quality="bilinear",
        encode_format="jpeg",
        encode_quality=0.92,
        artifact_stem="test",
        generation=GenerationParams(width=8, height=4, seed=1),
    )
