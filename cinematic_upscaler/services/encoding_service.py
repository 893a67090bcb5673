from __future__ import annotations
import logging
from dataclasses import dataclass
from io import BytesIO

from ..exceptions import EncodingFailed
from ..models.raster_image import RasterImage
from ..repositories.raster_repository import RasterRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageFormat:
    pil_name: str
    extension: str
    mime_type: str
    has_alpha: bool
    lossy: bool


FORMATS = {
    "jpeg": ImageFormat("JPEG", ".jpg", "image/jpeg", has_alpha=False, lossy=True),
    "png": ImageFormat("PNG", ".png", "image/png", has_alpha=True, lossy=False),
    "webp": ImageFormat("WEBP", ".webp", "image/webp", has_alpha=True, lossy=True),
}
_ALIASES = {"jpg": "jpeg", "image/jpeg": "jpeg", "image/png": "png", "image/webp": "webp"}


def resolve_format(fmt: str) -> ImageFormat:
    key = str(fmt).strip().lower()
    key = _ALIASES.get(key, key)
    if key not in FORMATS:
        raise EncodingFailed(f"Unsupported format {fmt!r}")
    return FORMATS[key]


class EncodingService:
    """
    RasterImage → compressed bytes.
    Formats without alpha (JPEG) silently drop it.
    """

    def __init__(self):
        self.raster_repository = RasterRepository()

    @staticmethod
    def check_params(fmt: str, quality) -> tuple[ImageFormat, float]:
        """Resolve *fmt* and validate *quality*; raises EncodingFailed."""
        image_format = resolve_format(fmt)
        try:
            quality = float(quality)
        except (TypeError, ValueError) as err:
            raise EncodingFailed(f"Quality must be a number, got {quality!r}", cause=err) from err
        if not 0.0 <= quality <= 1.0:
            raise EncodingFailed(f"Quality must be within [0, 1], got {quality}")
        return image_format, quality

    def encode(self, img: RasterImage, fmt: str = "jpeg", quality: float = 0.92) -> bytes:
        """
        Args:
            img: Image to encode; left untouched.
            fmt: ``jpeg``, ``png`` or ``webp`` (MIME types accepted too).
            quality: Lossy quality in [0, 1]. Ignored by PNG.

        Returns:
            bytes: A self-contained file in *fmt*.
        """
        image_format, quality = self.check_params(fmt, quality)

        pil_img = self.raster_repository.to_pil(img, "RGBA" if image_format.has_alpha else "RGB")
        params = {}
        if image_format.lossy:
            params["quality"] = max(1, int(round(quality * 100)))

        buffer = BytesIO()
        try:
            pil_img.save(buffer, format=image_format.pil_name, **params)
        except MemoryError as err:
            raise EncodingFailed(f"Out of memory encoding {img.width}x{img.height}", cause=err) from err
        except (OSError, ValueError, KeyError) as err:
            raise EncodingFailed(f"{image_format.pil_name} encoder rejected the image: {err}",
                                 cause=err) from err

        data = buffer.getvalue()
        logger.info(f"Encoded {img.width}x{img.height} as {image_format.pil_name} "
                    f"(q={quality:.2f}) → {len(data) / 1e6:.2f} MB")
        return data
