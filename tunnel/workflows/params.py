from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TemplateDefaults:
    width: int
    height: int
    num_frames: int
    fps: int
    steps: int
    cfg_scale: float
    negative_prompt: str
    text_encoder: str
    vae: Optional[str] = None  # None: the checkpoint carries its own VAE


@dataclass(frozen=True)
class GraphParams:
    """Fully resolved inputs for one graph build. ``seed`` is never -1 here."""
    model: str
    prompt: str
    negative_prompt: str
    width: int
    height: int
    num_frames: int
    fps: int
    steps: int
    cfg_scale: float
    seed: int
    text_encoder: str
    vae: Optional[str] = None
