from __future__ import annotations
import logging

import cv2
import numpy as np

from ..exceptions import ToneMappingFailed
from ..models.raster_image import RasterImage
from ..models.tone_grade import ToneGrade
from ..repositories.raster_repository import RasterRepository

logger = logging.getLogger(__name__)


class ToneMappingService:
    """
    HDR-style tonemap + warm grade.
    *   Pure: returns a *new* RasterImage, the input buffer is never touched.
    *   Alpha is copied verbatim.
    """

    def __init__(self, grade: ToneGrade | None = None):
        self.grade = grade or ToneGrade()
        self.raster_repository = RasterRepository()
        self._lut = self.grade.build_lut()

    def apply(self, img: RasterImage) -> RasterImage:
        self.raster_repository.validate(img)
        src = img.pixels
        if not src.flags['C_CONTIGUOUS']:
            src = np.ascontiguousarray(src)
        try:
            # 4-channel table: each channel looked up in its own column
            out = cv2.LUT(src, self._lut)
        except cv2.error as err:
            raise ToneMappingFailed(f"Lookup failed for {img.width}x{img.height}", cause=err) from err
        logger.debug(f"Tone-mapped {img.width}x{img.height}")
        return RasterImage(width=img.width, height=img.height, pixels=out)
