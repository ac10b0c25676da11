"""
LTX-Video text-to-video graph for ComfyUI.

The checkpoint holds MODEL + VAE but not the text encoder; a separate
CLIPLoader of type "ltxv" loads T5-XXL.

Checkpoint:   models/checkpoints/ltx-video-2b-v0.9.5.safetensors
Text encoder: models/text_encoders/t5xxl_fp16.safetensors
"""
from __future__ import annotations

from typing import Any, Dict

from tunnel.workflows.params import GraphParams, TemplateDefaults

LTX_VIDEO_DEFAULTS = TemplateDefaults(
    width=512,
    height=320,
    num_frames=41,
    fps=8,
    steps=20,
    cfg_scale=3.0,
    negative_prompt="worst quality, blurry, distorted, disfigured, motion smear, motion artifacts",
    text_encoder="t5xxl_fp16.safetensors",
)

LTX_VIDEO_OUTPUT_NODE = "8"


def build_ltx_video_graph(p: GraphParams) -> Dict[str, Any]:
    return {
        "1": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": p.model},
        },
        "2": {
            "class_type": "CLIPLoader",
            "inputs": {"clip_name": p.text_encoder, "type": "ltxv"},
        },
        # Text conditioning comes from the CLIPLoader, not the checkpoint
        "3": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": p.prompt, "clip": ["2", 0]},
        },
        "4": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": p.negative_prompt, "clip": ["2", 0]},
        },
        "5": {
            "class_type": "EmptyLTXVLatentVideo",
            "inputs": {
                "width": p.width,
                "height": p.height,
                "length": p.num_frames,
                "batch_size": 1,
            },
        },
        "6": {
            "class_type": "KSampler",
            "inputs": {
                "model": ["1", 0],
                "positive": ["3", 0],
                "negative": ["4", 0],
                "latent_image": ["5", 0],
                "seed": p.seed,
                "steps": p.steps,
                "cfg": p.cfg_scale,
                "sampler_name": "euler",
                "scheduler": "normal",
                "denoise": 1.0,
            },
        },
        # VAE is output slot 2 of the checkpoint loader
        "7": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["6", 0], "vae": ["1", 2]},
        },
        LTX_VIDEO_OUTPUT_NODE: {
            "class_type": "VHS_VideoCombine",
            "inputs": {
                "images": ["7", 0],
                "frame_rate": p.fps,
                "loop_count": 0,
                "filename_prefix": "ltxv_output",
                "format": "video/h264-mp4",
                "pingpong": False,
                "save_output": True,
            },
        },
    }
