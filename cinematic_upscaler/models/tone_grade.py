from __future__ import annotations
from dataclasses import dataclass
import numpy as np


@dataclass(frozen=True)
class ToneGrade:
    """
    Value-object holding the HDR-style tone-map and warm grade constants.

    Every step works on one channel at a time, so the whole chain for an
    8-bit sample collapses into a 256-entry table per channel.
    """
    exposure: float = 1.15         # linear gain before the curve
    white_point: float = 4.0       # extended Reinhard white
    warmth: float = 1.04           # red gain (green gets warmth * green_balance)
    green_balance: float = 0.995
    contrast: float = 1.06         # pivot at mid-gray
    gamma: float = 2.2             # sRGB-ish transfer
    gamma_trim: float = 0.95       # slight lift on re-encode

    # ── Core math (float64, vectorised) ─────────────────────────────
    def decode(self, samples: np.ndarray) -> np.ndarray:
        return np.power(samples / 255.0, self.gamma)

    def tonemap(self, x: np.ndarray) -> np.ndarray:
        return x * (1.0 + x / (self.white_point * self.white_point)) / (1.0 + x)

    def adjust_contrast(self, x: np.ndarray) -> np.ndarray:
        return (x - 0.5) * self.contrast + 0.5

    def encode(self, x: np.ndarray) -> np.ndarray:
        x = np.clip(x, 0.0, 1.0)
        out = np.floor(np.power(x, 1.0 / (self.gamma * self.gamma_trim)) * 255.0 + 0.5)
        return np.clip(out, 0, 255)

    def channel_gains(self) -> tuple[float, float, float]:
        return self.warmth, self.warmth * self.green_balance, 1.0

    def grade_channel(self, samples: np.ndarray, gain: float) -> np.ndarray:
        """Full chain for one colour channel: 8-bit in, 8-bit (as float) out."""
        x = self.decode(samples) * self.exposure
        x = self.tonemap(x) * gain
        return self.encode(self.adjust_contrast(x))

    # ── Compiled form ────────────────────────────────────────────────
    def build_lut(self) -> np.ndarray:
        """
        Return a (1, 256, 4) uint8 table: one column per RGBA channel,
        alpha is the identity.
        """
        ramp = np.arange(256, dtype=np.float64)
        lut = np.empty((1, 256, 4), dtype=np.uint8)
        for c, gain in enumerate(self.channel_gains()):
            lut[0, :, c] = self.grade_channel(ramp, gain).astype(np.uint8)
        lut[0, :, 3] = np.arange(256, dtype=np.uint8)
        return lut
