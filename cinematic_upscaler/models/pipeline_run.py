from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..exceptions import PipelineError, RunCancelled


class Stage(str, Enum):
    IDLE = "Idle"
    LOADING_SOURCE = "LoadingSource"
    GENERATING_BASE = "GeneratingBase"
    TONE_MAPPING = "ToneMapping"
    UPSCALING = "Upscaling"
    ENCODING = "Encoding"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED, Stage.CANCELLED)


# Allowed forward moves; FAILED / CANCELLED are reachable from any non-terminal stage.
_NEXT_STAGE = {
    Stage.IDLE: Stage.LOADING_SOURCE,
    Stage.LOADING_SOURCE: Stage.GENERATING_BASE,
    Stage.GENERATING_BASE: Stage.TONE_MAPPING,
    Stage.TONE_MAPPING: Stage.UPSCALING,
    Stage.UPSCALING: Stage.ENCODING,
    Stage.ENCODING: Stage.DONE,
}


class CancelToken:
    """
    Cooperative cancellation flag for one run.
    cancel() must be called from the event-loop thread; is_cancelled may be
    read from worker threads.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PipelineRun:
    """
    Mutable state of a single invocation. Frozen once a terminal stage
    is reached.
    """
    prompt: str
    options: Any = None
    stage: Stage = Stage.IDLE
    status: str = "Idle"
    result: Optional[bytes] = None
    error: Optional[PipelineError] = None
    artifact_name: Optional[str] = None
    mime_type: Optional[str] = None
    cancel_token: CancelToken = field(default_factory=CancelToken)
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    async def wait_finished(self) -> None:
        await self.finished.wait()

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def advance(self, stage: Stage, status: str) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Run already finished in state {self.stage.value}")
        if stage not in (Stage.FAILED, Stage.CANCELLED) and _NEXT_STAGE.get(self.stage) is not stage:
            raise RuntimeError(f"Illegal transition {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.status = status
        if stage.is_terminal:
            self.finished_at = time.monotonic()
