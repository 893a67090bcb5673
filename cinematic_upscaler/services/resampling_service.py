from __future__ import annotations

import logging
import os
from typing import Optional, Union

import numpy as np
from dotenv import load_dotenv
from PIL import Image as PILImage
from tqdm import tqdm

from ..exceptions import ResamplingFailed
from ..models.pipeline_run import CancelToken
from ..models.raster_image import RasterImage
from ..repositories.raster_repository import RasterRepository

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

_R = PILImage.Resampling

FILTERS = {
    "nearest": _R.NEAREST,
    "box": _R.BOX,
    "bilinear": _R.BILINEAR,
    "hamming": _R.HAMMING,
    "bicubic": _R.BICUBIC,
    "lanczos": _R.LANCZOS,
    # tiers
    "low": _R.BILINEAR,
    "medium": _R.BICUBIC,
    "high": _R.LANCZOS,
}

# Integer tiers 0..3: box, hamming, lanczos2-class (bicubic), lanczos3
NUMERIC_TIERS = (_R.BOX, _R.HAMMING, _R.BICUBIC, _R.LANCZOS)


def resolve_filter(quality: Union[str, int]) -> PILImage.Resampling:
    if isinstance(quality, int) and not isinstance(quality, bool):
        if 0 <= quality < len(NUMERIC_TIERS):
            return NUMERIC_TIERS[quality]
    elif isinstance(quality, str) and quality.strip().lower() in FILTERS:
        return FILTERS[quality.strip().lower()]
    raise ResamplingFailed(f"Unknown resample quality {quality!r}")


class ResamplingService:
    """
    Band-wise resampler.

    The output buffer (W * H * 4 bytes) is allocated once; the source is then
    resampled into it RESAMPLE_BAND_ROWS rows at a time using Pillow's
    ``box`` argument, so the extra working memory is a single band
    (W * band_rows * 4 bytes) regardless of target height. Each band samples
    its neighbours outside the box, so bands join without seams.
    Targets above RESAMPLE_MAX_PIXELS are refused before allocating.
    """

    def __init__(self,
                 band_rows: int | None = None,
                 max_pixels: int | None = None,
                 show_progress: bool | None = None):
        if band_rows is None:
            band_rows = os.getenv("RESAMPLE_BAND_ROWS", "256")
        if max_pixels is None:
            max_pixels = os.getenv("RESAMPLE_MAX_PIXELS", "100000000")
        self.band_rows = int(band_rows)
        self.max_pixels = int(max_pixels)
        if show_progress is None:
            show_progress = os.getenv("RESAMPLE_PROGRESS", "0").lower() in ("1", "true", "yes")
        self.show_progress = show_progress
        if self.band_rows <= 0:
            raise ValueError(f"band_rows must be positive, got {self.band_rows}")
        if self.max_pixels <= 0:
            raise ValueError(f"max_pixels must be positive, got {self.max_pixels}")
        self.raster_repository = RasterRepository()

    def peak_bytes(self, target_width: int, target_height: int) -> int:
        """Upper bound of what resize() allocates: output + one band."""
        band = min(self.band_rows, target_height)
        return target_width * target_height * 4 + target_width * band * 4

    # ─── Public API ────────────────────────────────────────────────
    def resize(self,
               img: RasterImage,
               target_width: int,
               target_height: int,
               quality: Union[str, int] = "high",
               *,
               assume_opaque: bool = True,
               cancel_token: Optional[CancelToken] = None) -> RasterImage:
        """
        Resample *img* to target_width x target_height.

        With ``assume_opaque`` the alpha channel is not resampled; the output
        alpha is 255 everywhere. Otherwise alpha is resampled premultiplied.
        """
        self.raster_repository.validate(img)
        target_width, target_height = int(target_width), int(target_height)
        if target_width <= 0 or target_height <= 0:
            raise ResamplingFailed(f"Target size must be positive, got {target_width}x{target_height}")
        if target_width * target_height > self.max_pixels:
            raise ResamplingFailed(
                f"Target {target_width}x{target_height} exceeds the limit of {self.max_pixels} pixels")
        resample = resolve_filter(quality)

        logger.info(f"Resampling {img.width}x{img.height} → {target_width}x{target_height} "
                    f"({resample.name}, opaque={assume_opaque}, "
                    f"peak ≈ {self.peak_bytes(target_width, target_height) / 1e6:.0f} MB)")

        try:
            out = np.empty((target_height, target_width, 4), dtype=np.uint8)
            if assume_opaque:
                out[..., 3] = 255
                src = self.raster_repository.to_pil(img, "RGB")
            else:
                src = self.raster_repository.to_pil(img, "RGBa")

            bands = range(0, target_height, self.band_rows)
            for y0 in tqdm(bands, desc="upscale", ncols=70, disable=not self.show_progress):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                y1 = min(y0 + self.band_rows, target_height)
                # y * h / H keeps the last edge exactly at img.height
                box = (0.0, y0 * img.height / target_height,
                       float(img.width), y1 * img.height / target_height)
                band = src.resize((target_width, y1 - y0), resample, box=box)
                if assume_opaque:
                    out[y0:y1, :, :3] = np.asarray(band)
                else:
                    out[y0:y1] = np.asarray(band.convert("RGBA"))
        except MemoryError as err:
            raise ResamplingFailed(
                f"Out of memory resampling to {target_width}x{target_height}", cause=err) from err
        except (ValueError, OSError) as err:
            raise ResamplingFailed(f"Resampler fault: {err}", cause=err) from err

        return RasterImage(width=target_width, height=target_height, pixels=out)
