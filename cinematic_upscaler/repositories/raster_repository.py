from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Union

import numpy as np
from PIL import Image as PILImage

from ..exceptions import InvalidSourceImage
from ..models.raster_image import RasterImage

logger = logging.getLogger(__name__)


class RasterRepository:
    """
    Creation, validation and conversion of RasterImage entities, plus the
    only place that writes finished artifacts to disk.
    """

    @staticmethod
    def create_raster(pixels: np.ndarray) -> RasterImage:
        """
        Wrap an (H, W, 3|4) array as a new RasterImage.
        RGB input gets an opaque alpha channel. The array is always copied.
        """
        arr = np.asarray(pixels)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise InvalidSourceImage(f"Expected (H, W, 3|4) pixels, got shape {arr.shape}")

        if arr.dtype != np.uint8:
            if np.issubdtype(arr.dtype, np.floating):
                # diffusers "np" output: float in [0, 1]
                arr = np.floor(np.clip(arr, 0.0, 1.0) * 255.0 + 0.5)
            arr = np.clip(arr, 0, 255).astype(np.uint8)

        h, w = arr.shape[:2]
        rgba = np.empty((h, w, 4), dtype=np.uint8)
        rgba[..., :3] = arr[..., :3]
        rgba[..., 3] = arr[..., 3] if arr.shape[2] == 4 else 255
        return RasterImage(width=w, height=h, pixels=rgba)

    @staticmethod
    def from_samples(width: int, height: int, samples) -> RasterImage:
        """Build from a flat interleaved RGBA sequence (bytes, list or 1-D array)."""
        if isinstance(samples, (bytes, bytearray, memoryview)):
            flat = np.frombuffer(samples, dtype=np.uint8)
        else:
            flat = np.asarray(samples)
        if int(width) <= 0 or int(height) <= 0:
            raise InvalidSourceImage(f"Non-positive dimensions {width}x{height}")
        expected = int(width) * int(height) * 4
        if flat.size != expected:
            raise InvalidSourceImage(
                f"Buffer length {flat.size} does not match {width}x{height}x4 = {expected}")
        if flat.dtype != np.uint8:
            if flat.min() < 0 or flat.max() > 255:
                raise InvalidSourceImage("Samples must be 8-bit values")
            flat = flat.astype(np.uint8)
        pixels = flat.reshape(int(height), int(width), 4).copy()
        return RasterImage(width=int(width), height=int(height), pixels=pixels)

    @staticmethod
    def validate(img: RasterImage) -> RasterImage:
        """Raise InvalidSourceImage unless img satisfies the RasterImage contract."""
        if not isinstance(img.width, (int, np.integer)) or not isinstance(img.height, (int, np.integer)):
            raise InvalidSourceImage("Width and height must be integers")
        if img.width <= 0 or img.height <= 0:
            raise InvalidSourceImage(f"Non-positive dimensions {img.width}x{img.height}")
        px = img.pixels
        if not isinstance(px, np.ndarray) or px.dtype != np.uint8:
            raise InvalidSourceImage("Pixels must be a uint8 numpy array")
        if px.size != img.width * img.height * 4:
            raise InvalidSourceImage(
                f"Buffer length {px.size} does not match "
                f"{img.width}x{img.height}x4 = {img.width * img.height * 4}")
        if px.shape != (img.height, img.width, 4):
            raise InvalidSourceImage(f"Pixel shape {px.shape} is not (H, W, 4)")
        return img

    # ─── Producer output adapter ────────────────────────────────────
    def from_producer_output(self, output: Any) -> RasterImage:
        """
        Normalise whatever the base-image producer returned. Checked in order:
          1. RasterImage
          2. pipeline output with an ``images`` list (first entry is used)
          3. PIL image
          4. numpy array (H, W, 3|4)
          5. image-data-like object or mapping with data / width / height
        Anything else is InvalidSourceImage.
        """
        if output is None:
            raise InvalidSourceImage("Producer returned no image")

        if isinstance(output, RasterImage):
            logger.debug("Producer output is a RasterImage")
            self.validate(output)
            return RasterImage(output.width, output.height, output.pixels.copy())

        images = getattr(output, "images", None)
        if images is not None:
            if len(images) == 0:
                raise InvalidSourceImage("Producer returned an empty image list")
            logger.debug(f"Producer output wraps {len(images)} image(s), using the first")
            return self.from_producer_output(images[0])

        if isinstance(output, PILImage.Image):
            logger.debug(f"Producer output is a PIL image ({output.mode})")
            return self.from_pil(output)

        if isinstance(output, np.ndarray):
            logger.debug(f"Producer output is an array {output.shape}")
            arr = output[0] if output.ndim == 4 and output.shape[0] == 1 else output
            return self.validate(self.create_raster(arr))

        if isinstance(output, dict):
            data, width, height = output.get("data"), output.get("width"), output.get("height")
        else:
            data = getattr(output, "data", None)
            width = getattr(output, "width", None)
            height = getattr(output, "height", None)
        if data is not None and width and height:
            logger.debug(f"Producer output is image data {width}x{height}")
            return self.validate(self.from_samples(width, height, data))

        raise InvalidSourceImage(f"Unable to read generated image of type {type(output).__name__}")

    # ─── PIL bridge ─────────────────────────────────────────────────
    def from_pil(self, pil_img: PILImage.Image) -> RasterImage:
        if pil_img.width <= 0 or pil_img.height <= 0:
            raise InvalidSourceImage(f"Non-positive dimensions {pil_img.width}x{pil_img.height}")
        return self.create_raster(np.asarray(pil_img.convert("RGBA")))

    @staticmethod
    def to_pil(img: RasterImage, mode: str = "RGBA") -> PILImage.Image:
        """
        Convert to a PIL image in *mode*. Ensures the array is C-contiguous.
        """
        np_img = img.pixels
        if not np_img.flags['C_CONTIGUOUS']:
            np_img = np.ascontiguousarray(np_img)
        pil_img = PILImage.fromarray(np_img)
        return pil_img if mode == "RGBA" else pil_img.convert(mode)

    # ─── Artifact I/O ───────────────────────────────────────────────
    @staticmethod
    def save_artifact(data: bytes, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Wrote {len(data) / 1e6:.1f} MB to {path}")
        return path
