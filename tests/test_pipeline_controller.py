import asyncio
import threading
import time
from io import BytesIO

import numpy as np
import pytest
from PIL import Image as PILImage

from cinematic_upscaler.exceptions import (
    EncodingFailed,
    InvalidSourceImage,
    ResamplingFailed,
    SourceGenerationFailed,
)
from cinematic_upscaler.models.pipeline_run import Stage
from cinematic_upscaler.models.raster_image import RasterImage
from cinematic_upscaler.pipeline.controller import PipelineController
from cinematic_upscaler.pipeline.options import PipelineOptions
from cinematic_upscaler.services.resampling_service import ResamplingService
from cinematic_upscaler.services.tone_mapping_service import ToneMappingService

from conftest import BlockingProducer, StubProducer, make_raster


def _run(controller, prompt="a prompt", options=None):
    return asyncio.run(controller.run(prompt, options))


def test_successful_run_publishes_every_stage(gradient_image, small_options):
    producer = StubProducer(output=gradient_image)
    controller = PipelineController(producer)
    seen = []
    controller.subscribe(lambda run: seen.append((run.stage, run.status)))

    run = _run(controller, "misty valley", small_options)

    assert run.stage is Stage.DONE
    assert run.error is None
    assert [stage for stage, _ in seen] == [
        Stage.IDLE, Stage.LOADING_SOURCE, Stage.GENERATING_BASE, Stage.TONE_MAPPING,
        Stage.UPSCALING, Stage.ENCODING, Stage.DONE,
    ]
    assert seen[1][1] == "Loading model (CPU)…"
    assert seen[-1][1] == "Done"
    assert producer.loaded
    assert producer.calls[0][0] == "misty valley"
    assert producer.calls[0][1] is small_options.generation

    decoded = PILImage.open(BytesIO(run.result))
    assert decoded.size == (16, 9)
    assert run.artifact_name == "test-cinematic-16x9.jpg"
    assert run.mime_type == "image/jpeg"
    assert controller.stage is Stage.DONE
    assert controller.result == run.result
    assert controller.active_run is None


def test_black_white_pair_scenario():
    pixels = np.array([[[0, 0, 0, 255], [255, 255, 255, 255]]], dtype=np.uint8)
    source = RasterImage(width=2, height=1, pixels=pixels)
    options = PipelineOptions(target_width=4, target_height=1, resample_quality="nearest")

    run = _run(PipelineController(StubProducer(output=source)), options=options)

    assert run.stage is Stage.DONE
    decoded = np.asarray(PILImage.open(BytesIO(run.result)).convert("L"))
    assert decoded.shape == (1, 4)
    assert decoded[0, 0] < decoded[0, 3]


def test_producer_error_fails_run(small_options):
    controller = PipelineController(StubProducer(error=RuntimeError("model exploded")))
    run = _run(controller, options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, SourceGenerationFailed)
    assert run.error.kind == "SourceGenerationFailed"
    assert "model exploded" in run.error.message
    assert run.result is None
    assert run.status.startswith("Error")


def test_producer_load_error_fails_run(small_options):
    class BrokenLoad(StubProducer):
        async def load(self):
            raise OSError("weights missing")

    run = _run(PipelineController(BrokenLoad()), options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, SourceGenerationFailed)


@pytest.mark.parametrize("output", [
    None,
    RasterImage(width=0, height=3, pixels=np.zeros((3, 0, 4), dtype=np.uint8)),
    RasterImage(width=4, height=4, pixels=np.zeros((2, 4, 4), dtype=np.uint8)),
    {"unexpected": True},
])
def test_invalid_producer_output_fails_run(output, small_options):
    run = _run(PipelineController(StubProducer(output=output)), options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, InvalidSourceImage)
    assert run.result is None


def test_resampling_failure_is_reported(gradient_image, small_options):
    controller = PipelineController(StubProducer(output=gradient_image),
                                    resampler=ResamplingService(max_pixels=10))
    run = _run(controller, options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, ResamplingFailed)
    assert run.result is None


def test_unexpected_stage_exception_is_typed(gradient_image, small_options):
    class ExplodingEncoder:
        def encode(self, img, fmt, quality):
            raise RuntimeError("codec crashed")

    controller = PipelineController(StubProducer(output=gradient_image), encoder=ExplodingEncoder())
    run = _run(controller, options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, EncodingFailed)


def test_cancel_before_base_image_completes(gradient_image, small_options):
    async def scenario():
        producer = BlockingProducer(output=gradient_image)
        controller = PipelineController(producer)
        task = asyncio.create_task(controller.run("p", small_options))
        await producer.started.wait()
        controller.cancel()
        return await task

    run = asyncio.run(scenario())
    assert run.stage is Stage.CANCELLED
    assert run.result is None
    assert run.error is None
    assert run.status == "Cancelled"


def test_new_run_cancels_active_run(gradient_image, small_options):
    async def scenario():
        blocking = BlockingProducer(output=gradient_image)
        controller = PipelineController(blocking)
        first = asyncio.create_task(controller.run("first", small_options))
        await blocking.started.wait()

        controller.producer = StubProducer(output=gradient_image)
        second = await controller.run("second", small_options)
        return await first, second, controller

    first, second, controller = asyncio.run(scenario())
    assert first.stage is Stage.CANCELLED
    assert second.stage is Stage.DONE
    assert controller.last_run is second


def test_producer_timeout(gradient_image, small_options):
    small_options.producer_timeout = 0.05
    run = _run(PipelineController(BlockingProducer(output=gradient_image)), options=small_options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, SourceGenerationFailed)
    assert "timed out" in run.error.message


def test_terminal_run_is_frozen(gradient_image, small_options):
    run = _run(PipelineController(StubProducer(output=gradient_image)), options=small_options)
    with pytest.raises(RuntimeError):
        run.advance(Stage.ENCODING, "again")
    with pytest.raises(RuntimeError):
        run.advance(Stage.FAILED, "late failure")


def test_failed_run_does_not_affect_next_run(gradient_image, small_options):
    producer = StubProducer(error=RuntimeError("flaky"))
    controller = PipelineController(producer)
    failed = _run(controller, options=small_options)

    producer.error = None
    producer.output = gradient_image
    ok = _run(controller, options=small_options)

    assert failed.stage is Stage.FAILED and failed.result is None
    assert ok.stage is Stage.DONE and ok.error is None
    assert controller.error is None


def test_unsubscribe_and_listener_errors(gradient_image, small_options):
    controller = PipelineController(StubProducer(output=gradient_image))
    calls = []
    unsubscribe = controller.subscribe(lambda run: calls.append(run.stage))

    def broken(run):
        raise ValueError("listener bug")

    controller.subscribe(broken)
    unsubscribe()
    run = _run(controller, options=small_options)
    assert run.stage is Stage.DONE
    assert calls == []


def test_idle_controller_state():
    controller = PipelineController(StubProducer())
    assert controller.stage is Stage.IDLE
    assert controller.status == "Idle"
    assert controller.result is None and controller.error is None


def test_source_not_mutated_by_run(small_options):
    source = make_raster(4, 4, (30, 60, 90, 255))
    before = source.pixels.copy()
    _run(PipelineController(StubProducer(output=source)), options=small_options)
    assert np.array_equal(source.pixels, before)


class SlowToneMapper:
    """Real tone mapping behind a delay; tracks how many threads are inside at once."""

    def __init__(self, delay=0.2):
        self.inner = ToneMappingService()
        self.delay = delay
        self.entered = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def apply(self, img):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            time.sleep(self.delay)
            return self.inner.apply(img)
        finally:
            with self._lock:
                self.active -= 1


def test_new_run_waits_for_busy_stage_of_previous_run(gradient_image, small_options):
    async def scenario():
        tone_mapper = SlowToneMapper()
        controller = PipelineController(StubProducer(output=gradient_image), tone_mapper=tone_mapper)
        events = []
        controller.subscribe(lambda run: events.append((run.prompt, run.stage)))

        first = asyncio.create_task(controller.run("first", small_options))
        while not tone_mapper.entered.is_set():
            await asyncio.sleep(0.01)
        second = await controller.run("second", small_options)
        return await first, second, tone_mapper, events

    first, second, tone_mapper, events = asyncio.run(scenario())

    assert first.stage is Stage.CANCELLED
    assert second.stage is Stage.DONE
    assert tone_mapper.max_active == 1
    assert events.index(("first", Stage.CANCELLED)) < events.index(("second", Stage.IDLE))
    assert [e for e in events if e[0] == "first"][-1] == ("first", Stage.CANCELLED)
    assert first.finished.is_set() and second.finished.is_set()


@pytest.mark.parametrize("overrides", [{"encode_quality": 1.5}, {"encode_format": "tiff"}])
def test_bad_encode_settings_fail_the_run(gradient_image, overrides):
    producer = StubProducer(output=gradient_image)
    options = PipelineOptions(target_width=4, target_height=2, **overrides)
    run = _run(PipelineController(producer), options=options)
    assert run.stage is Stage.FAILED
    assert isinstance(run.error, EncodingFailed)
    assert run.result is None
    assert producer.calls == [] and not producer.loaded
