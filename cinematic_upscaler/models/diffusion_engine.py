# models/diffusion_engine.py
from __future__ import annotations
import logging
import threading
import torch

logger = logging.getLogger(__name__)


class DiffusionEngine:
    """
    Singleton wrapper around a diffusers text-to-image pipeline.
    • The weights are loaded once per Python process, on first construction.
    • Picks CUDA, then Apple MPS, then CPU.
    """

    _instance = None
    _lock = threading.RLock()

    # ───────────────────────── singleton ctor
    def __new__(cls, model_id: str = "stabilityai/sd-turbo"):
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._init(model_id)
                cls._instance = instance
            return cls._instance

    @staticmethod
    def pick_device() -> str:
        # Use MPS on Apple Silicon, CUDA on NVIDIA, CPU otherwise
        if torch.cuda.is_available():
            return "cuda"
        if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    # ───────────────────────── actual init
    def _init(self, model_id: str):
        # diffusers pulls in transformers; keep it out of module import time
        from diffusers import AutoPipelineForText2Image

        self.device = self.pick_device()
        dtype = torch.float16 if self.device == "cuda" else torch.float32
        logger.info(f"Loading {model_id} on {self.device} ({dtype})")
        self.model_id = model_id
        self.pipe = AutoPipelineForText2Image.from_pretrained(model_id, torch_dtype=dtype)
        self.pipe = self.pipe.to(self.device)
        self.pipe.set_progress_bar_config(disable=True)

    # ───────────────────────── public API
    @torch.inference_mode()
    def generate(self, prompt: str, *, width: int, height: int,
                 guidance_scale: float, num_inference_steps: int,
                 negative_prompt: str | None, seed: int | None):
        generator = None
        if seed is not None:
            # MPS generators are not supported everywhere; seed on CPU there
            gen_device = "cpu" if self.device == "mps" else self.device
            generator = torch.Generator(device=gen_device).manual_seed(seed)
        return self.pipe(
            prompt=prompt,
            width=width,
            height=height,
            guidance_scale=guidance_scale,
            num_inference_steps=num_inference_steps,
            negative_prompt=negative_prompt or None,
            generator=generator,
        )
