"""
Wan 2.1 text-to-video graph for ComfyUI (native nodes only).

Diffusion model: models/diffusion_models/wan2.1_t2v_1.3B_fp16.safetensors
Text encoder:    models/text_encoders/umt5_xxl_fp8_e4m3fn_scaled.safetensors
VAE:             models/vae/wan_2.1_vae.safetensors
"""
from __future__ import annotations

from typing import Any, Dict

from tunnel.workflows.params import GraphParams, TemplateDefaults

WAN21_DEFAULTS = TemplateDefaults(
    width=480,
    height=320,
    num_frames=25,
    fps=8,
    steps=20,
    cfg_scale=5.0,
    negative_prompt="worst quality, blurry, distorted",
    text_encoder="umt5_xxl_fp8_e4m3fn_scaled.safetensors",
    vae="wan_2.1_vae.safetensors",
)

WAN21_OUTPUT_NODE = "9"


def build_wan21_graph(p: GraphParams) -> Dict[str, Any]:
    return {
        "1": {
            "class_type": "UNETLoader",
            "inputs": {"unet_name": p.model, "weight_dtype": "default"},
        },
        "2": {
            "class_type": "CLIPLoader",
            "inputs": {"clip_name": p.text_encoder, "type": "wan"},
        },
        "3": {
            "class_type": "VAELoader",
            "inputs": {"vae_name": p.vae or WAN21_DEFAULTS.vae},
        },
        "4": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": p.prompt, "clip": ["2", 0]},
        },
        "5": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": p.negative_prompt, "clip": ["2", 0]},
        },
        # One latent per frame
        "6": {
            "class_type": "EmptySD3LatentImage",
            "inputs": {
                "width": p.width,
                "height": p.height,
                "batch_size": p.num_frames,
            },
        },
        "7": {
            "class_type": "KSampler",
            "inputs": {
                "model": ["1", 0],
                "positive": ["4", 0],
                "negative": ["5", 0],
                "latent_image": ["6", 0],
                "seed": p.seed,
                "steps": p.steps,
                "cfg": p.cfg_scale,
                "sampler_name": "euler",
                "scheduler": "normal",
                "denoise": 1.0,
            },
        },
        "8": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["7", 0], "vae": ["3", 0]},
        },
        WAN21_OUTPUT_NODE: {
            "class_type": "VHS_VideoCombine",
            "inputs": {
                "images": ["8", 0],
                "frame_rate": p.fps,
                "loop_count": 0,
                "filename_prefix": "wan21_output",
                "format": "video/h264-mp4",
                "pingpong": False,
                "save_output": True,
            },
        },
    }
