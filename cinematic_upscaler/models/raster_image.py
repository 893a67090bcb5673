from __future__ import annotations
from dataclasses import dataclass
import numpy as np


@dataclass
class RasterImage:
    """
    Simple data object: RGBA pixels in sRGB (gamma-encoded) order.
    No conversion or validation logic outside the repository.
    """
    width: int  # Pixels per row.
    height: int  # Number of rows.
    pixels: np.ndarray  # Shape (H, W, 4), dtype uint8, RGBA order.

    @property
    def samples(self) -> np.ndarray:
        """Flat row-major view: r, g, b, a, r, g, b, a, ..."""
        return self.pixels.reshape(-1)

    @property
    def nbytes(self) -> int:
        return self.width * self.height * 4
