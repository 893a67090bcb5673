from .exceptions import (
    PipelineError, SourceGenerationFailed, InvalidSourceImage, ToneMappingFailed,
    ResamplingFailed, EncodingFailed, RunCancelled,
)
from .models.raster_image import RasterImage
from .models.tone_grade import ToneGrade
from .models.pipeline_run import Stage, CancelToken, PipelineRun
from .repositories.raster_repository import RasterRepository
from .services.tone_mapping_service import ToneMappingService
from .services.resampling_service import ResamplingService
from .services.encoding_service import EncodingService
from .pipeline.options import PipelineOptions, GenerationParams
from .pipeline.controller import PipelineController

__all__ = [
    "PipelineError", "SourceGenerationFailed", "InvalidSourceImage", "ToneMappingFailed",
    "ResamplingFailed", "EncodingFailed", "RunCancelled",
    "RasterImage", "ToneGrade",
    "Stage", "CancelToken", "PipelineRun",
    "RasterRepository",
    "ToneMappingService", "ResamplingService", "EncodingService",
    "PipelineOptions", "GenerationParams",
    "PipelineController",
]
