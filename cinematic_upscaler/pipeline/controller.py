"""
Pipeline Controller
Runs generate → tonemap → upscale → encode for one prompt at a time,
publishing a status line on every transition.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Type

from ..exceptions import (
    EncodingFailed,
    InvalidSourceImage,
    PipelineError,
    ResamplingFailed,
    RunCancelled,
    SourceGenerationFailed,
    ToneMappingFailed,
)
from ..models.pipeline_run import PipelineRun, Stage
from ..models.raster_image import RasterImage
from ..repositories.raster_repository import RasterRepository
from ..services.encoding_service import EncodingService, resolve_format
from ..services.resampling_service import ResamplingService
from ..services.tone_mapping_service import ToneMappingService
from .options import PipelineOptions

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineRun], None]


class PipelineController:
    """
    Owns the run state machine.

    *   The base-image producer is injected; nothing here loads a model.
    *   Single-flight: starting a run cancels the one still in progress and
        waits for it to reach a terminal state first.
    *   Every failure ends the run as FAILED with a typed PipelineError;
        cancellation ends it as CANCELLED with no error.
    """

    def __init__(self,
                 producer,
                 *,
                 tone_mapper: ToneMappingService | None = None,
                 resampler: ResamplingService | None = None,
                 encoder: EncodingService | None = None,
                 raster_repository: RasterRepository | None = None):
        self.producer = producer
        self.tone_mapper = tone_mapper or ToneMappingService()
        self.resampler = resampler or ResamplingService()
        self.encoder = encoder or EncodingService()
        self.raster_repository = raster_repository or RasterRepository()
        self._listeners: List[Listener] = []
        self._active: Optional[PipelineRun] = None
        self._last: Optional[PipelineRun] = None

    # ─── Observation ───────────────────────────────────────────────
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(run)* after every transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def last_run(self) -> Optional[PipelineRun]:
        return self._last

    @property
    def active_run(self) -> Optional[PipelineRun]:
        return self._active

    @property
    def stage(self) -> Stage:
        return self._last.stage if self._last else Stage.IDLE

    @property
    def status(self) -> str:
        return self._last.status if self._last else Stage.IDLE.value

    @property
    def result(self) -> Optional[bytes]:
        return self._last.result if self._last else None

    @property
    def error(self) -> Optional[PipelineError]:
        return self._last.error if self._last else None

    # ─── Control ───────────────────────────────────────────────────
    def cancel(self) -> None:
        """Ask the active run to stop at its next stage boundary."""
        if self._active is not None and not self._active.is_terminal:
            logger.info("Cancellation requested")
            self._active.cancel_token.cancel()

    async def run(self, prompt: str, options: PipelineOptions | None = None) -> PipelineRun:
        """
        Execute one full pipeline run and return it in a terminal state.
        The returned run's ``result`` holds the encoded bytes only when DONE.
        """
        options = options or PipelineOptions.from_env()
        # single-flight: the previous run must be fully stopped before this one starts
        while self._active is not None and not self._active.is_terminal:
            previous = self._active
            logger.info("New run requested, cancelling the active one")
            previous.cancel_token.cancel()
            await previous.wait_finished()

        run = PipelineRun(prompt=prompt, options=options)
        self._active = self._last = run
        self._publish(run)

        try:
            await self._execute(run, options)
        except RunCancelled:
            self._transition(run, Stage.CANCELLED, "Cancelled")
        except PipelineError as err:
            logger.error(f"Run failed: {err}")
            run.error = err
            self._transition(run, Stage.FAILED, f"Error: {err.message}")
        except asyncio.CancelledError:
            # the task itself was cancelled: record it, then let it propagate
            if not run.is_terminal:
                self._transition(run, Stage.CANCELLED, "Cancelled")
            raise
        finally:
            if self._active is run:
                self._active = None
            run.finished.set()

        logger.info(f"Run finished as {run.stage.value} in {run.elapsed:.1f}s")
        return run

    # ─── Stages ────────────────────────────────────────────────────
    async def _execute(self, run: PipelineRun, options: PipelineOptions) -> None:
        token = run.cancel_token
        device = getattr(self.producer, "device_label", "CPU")

        # bad encode settings fail the run up front instead of after the upscale
        EncodingService.check_params(options.encode_format, options.encode_quality)

        self._transition(run, Stage.LOADING_SOURCE, f"Loading model ({device})…")
        await self._race(run, self.producer.load(), SourceGenerationFailed, options.producer_timeout)

        token.raise_if_cancelled()
        self._transition(run, Stage.GENERATING_BASE, "Generating base image…")
        output = await self._race(run, self.producer.generate(run.prompt, options.generation),
                                  SourceGenerationFailed, options.producer_timeout)
        base = self._normalise(output)

        token.raise_if_cancelled()
        self._transition(run, Stage.TONE_MAPPING, "Applying HDR tonemapping…")
        graded = await self._in_thread(ToneMappingFailed, self.tone_mapper.apply, base)

        token.raise_if_cancelled()
        self._transition(run, Stage.UPSCALING,
                         f"Upscaling to {options.resolution_label.upper()} (this can take a while)…")
        upscaled = await self._in_thread(
            ResamplingFailed, self.resampler.resize, graded,
            options.target_width, options.target_height, options.resample_quality,
            assume_opaque=options.assume_opaque, cancel_token=token)
        del graded

        token.raise_if_cancelled()
        self._transition(run, Stage.ENCODING, "Encoding final image…")
        data = await self._in_thread(EncodingFailed, self.encoder.encode, upscaled,
                                     options.encode_format, options.encode_quality)
        del upscaled

        token.raise_if_cancelled()
        image_format = resolve_format(options.encode_format)
        run.result = data
        run.artifact_name = options.artifact_name(image_format.extension)
        run.mime_type = image_format.mime_type
        self._transition(run, Stage.DONE, "Done")

    def _normalise(self, output: Any) -> RasterImage:
        try:
            return self.raster_repository.from_producer_output(output)
        except InvalidSourceImage:
            raise
        except Exception as err:
            raise InvalidSourceImage(f"Unable to read generated image: {err}", cause=err) from err

    async def _race(self,
                    run: PipelineRun,
                    work: Awaitable[Any],
                    error_type: Type[PipelineError],
                    timeout: float | None) -> Any:
        """
        Await *work* unless the run is cancelled or *timeout* expires first.
        Failures of *work* are re-raised as *error_type*.
        """
        task = asyncio.ensure_future(work)
        cancelled = asyncio.ensure_future(run.cancel_token.wait())
        try:
            done, _ = await asyncio.wait({task, cancelled}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancelled.cancel()

        if task not in done:
            task.cancel()
            if run.cancel_token.is_cancelled:
                raise RunCancelled()
            raise error_type(f"Producer timed out after {timeout:g}s")

        try:
            return task.result()
        except PipelineError:
            raise
        except Exception as err:
            raise error_type(str(err) or type(err).__name__, cause=err) from err

    @staticmethod
    async def _in_thread(error_type: Type[PipelineError], fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (PipelineError, RunCancelled):
            raise
        except Exception as err:
            logger.exception(f"{error_type.kind} in {getattr(fn, '__qualname__', fn)}")
            raise error_type(str(err) or type(err).__name__, cause=err) from err

    # ─── Notification ──────────────────────────────────────────────
    def _transition(self, run: PipelineRun, stage: Stage, status: str) -> None:
        run.advance(stage, status)
        logger.info(f"[{stage.value}] {status}")
        self._publish(run)

    def _publish(self, run: PipelineRun) -> None:
        for listener in list(self._listeners):
            try:
                listener(run)
            except Exception:
                logger.exception("Status listener raised")
