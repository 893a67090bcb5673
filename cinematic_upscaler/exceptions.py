from __future__ import annotations
from typing import Optional


class PipelineError(Exception):
    """Base for every typed failure a run can end with."""
    kind = "PipelineError"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class SourceGenerationFailed(PipelineError):
    """The base-image producer raised, timed out or returned nothing usable."""
    kind = "SourceGenerationFailed"


class InvalidSourceImage(PipelineError):
    """Producer output could not be turned into a valid RasterImage."""
    kind = "InvalidSourceImage"


class ToneMappingFailed(PipelineError):
    kind = "ToneMappingFailed"


class ResamplingFailed(PipelineError):
    """Allocation failure or resampler fault at the target size."""
    kind = "ResamplingFailed"


class EncodingFailed(PipelineError):
    """Codec rejected the buffer, the format or the quality value."""
    kind = "EncodingFailed"


class RunCancelled(Exception):
    """
    Raised at a stage boundary once the run's cancel token is set.
    Not a PipelineError: a cancelled run carries no error.
    """
