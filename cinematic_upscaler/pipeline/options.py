"""
Run options and generation parameters.

Defaults come from the environment (a ``.env`` file is honoured); explicit
constructor arguments always win.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Union

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DEFAULT_NEGATIVE_PROMPT = (
    "lowres, blurry, deformed, text artifacts, watermark, extra limbs, disfigured, bad anatomy, "
    "bad hands, duplicate, cropped, worst quality, low quality, jpeg artifacts"
)

DEFAULT_PROMPT = " ".join([
    "Photorealistic, cinematic 8K render, early morning rural Rajasthani village courtyard.",
    "Small mud hut with dusty courtyard, hanging clotheslines, clay pots scattered.",
    "Soft golden sunlight with subtle god rays, HDR tones, warm color grading.",
    "A humanoid monkey with realistic skin and fur textures lies asleep on a traditional khat (cot).",
    "A beautiful Rajasthani village girl in traditional attire enters carrying a heavy gas cylinder.",
    "She mischievously drops the cylinder onto the monkey's chest to wake him.",
    "The monkey wakes up, shocked expression; the girl smirks.",
    "Include a cow peacefully grazing in the background near the hut.",
    "Ultra-detailed textures, realistic skin and fur, volumetric light shafts, "
    "cinematic depth of field, film grain.",
    "High dynamic range lighting, sharp focus on characters, warm and humorous mood.",
])

# Common UHD heights → marketing label used in status text and filenames
_RESOLUTION_LABELS = {4320: "8k", 2160: "4k", 1440: "2k", 1080: "1080p"}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    value = float(raw)
    return value if value > 0 else None


def resolution_label(width: int, height: int) -> str:
    return _RESOLUTION_LABELS.get(height, f"{width}x{height}")


@dataclass
class GenerationParams:
    """Parameters forwarded to the base-image producer."""
    width: int = 1024                # 16:9 base for turbo models
    height: int = 576
    guidance_scale: float = 0.0      # turbo works well with no guidance
    num_inference_steps: int = 2
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    seed: int | None = 42

    @classmethod
    def from_env(cls) -> "GenerationParams":
        seed = os.getenv("RANDOM_SEED", "42").strip()
        return cls(
            width=int(os.getenv("BASE_WIDTH", "1024")),
            height=int(os.getenv("BASE_HEIGHT", "576")),
            guidance_scale=float(os.getenv("GUIDANCE_SCALE", "0.0")),
            num_inference_steps=int(os.getenv("INFERENCE_STEPS", "2")),
            negative_prompt=os.getenv("NEGATIVE_PROMPT", DEFAULT_NEGATIVE_PROMPT),
            seed=int(seed) if seed else None,
        )


@dataclass
class PipelineOptions:
    """
    Caller-facing options for one run.

    ``assume_opaque`` lets the resampler skip the alpha channel and write
    255 instead; generated sources are always opaque.
    """
    target_width: int = 7680         # 8K UHD
    target_height: int = 4320
    resample_quality: Union[str, int] = "high"
    encode_format: str = "jpeg"
    encode_quality: float = 0.92
    assume_opaque: bool = True
    artifact_stem: str = "render"
    producer_timeout: float | None = None
    generation: GenerationParams = field(default_factory=GenerationParams)

    def __post_init__(self):
        if int(self.target_width) <= 0 or int(self.target_height) <= 0:
            raise ValueError(
                f"Target size must be positive, got {self.target_width}x{self.target_height}")

    @classmethod
    def from_env(cls, **overrides) -> "PipelineOptions":
        quality: Union[str, int] = os.getenv("RESAMPLE_QUALITY", "high").strip()
        if quality.isdigit():
            quality = int(quality)
        values = dict(
            target_width=int(os.getenv("TARGET_WIDTH", "7680")),
            target_height=int(os.getenv("TARGET_HEIGHT", "4320")),
            resample_quality=quality,
            encode_format=os.getenv("ENCODE_FORMAT", "jpeg"),
            encode_quality=float(os.getenv("ENCODE_QUALITY", "0.92")),
            assume_opaque=_env_bool("RESAMPLE_ASSUME_OPAQUE", "1"),
            artifact_stem=os.getenv("ARTIFACT_STEM", "render"),
            producer_timeout=_env_optional_float("PRODUCER_TIMEOUT_S"),
            generation=GenerationParams.from_env(),
        )
        values.update(overrides)
        return cls(**values)

    @property
    def resolution_label(self) -> str:
        return resolution_label(self.target_width, self.target_height)

    def artifact_name(self, extension: str) -> str:
        """Suggested download name, e.g. ``render-cinematic-8k.jpg``."""
        stem = re.sub(r"[^a-z0-9]+", "-", self.artifact_stem.lower()).strip("-") or "render"
        return f"{stem}-cinematic-{self.resolution_label}{extension}"
