"""
Built-in ComfyUI video workflow templates.

Each supported model family maps a filename pattern to an API-format graph
builder, the id of the node that writes the video, and default parameters.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern

Workflow = Dict[str, Any]


@dataclass(frozen=True)
class VideoParams:
    model: str
    prompt: str
    negative_prompt: str
    width: int
    height: int
    num_frames: int
    fps: float
    steps: int
    cfg_scale: float
    seed: int


@dataclass(frozen=True)
class WorkflowDefaults:
    width: int
    height: int
    num_frames: int
    fps: float
    steps: int
    cfg_scale: float
    negative_prompt: str


@dataclass(frozen=True)
class WorkflowTemplate:
    family: str
    display_name: str
    pattern: Pattern[str]
    output_node_id: str
    defaults: WorkflowDefaults
    build: Callable[[VideoParams], Workflow]


def resolve_seed(seed: Optional[int]) -> int:
    if seed is None or seed == -1:
        return random.randrange(2 ** 32)
    return seed


def _video_combine(images_from: str, fps: float, prefix: str) -> Dict[str, Any]:
    return {
        "class_type": "VHS_VideoCombine",
        "inputs": {
            "images": [images_from, 0],
            "frame_rate": fps,
            "loop_count": 0,
            "filename_prefix": prefix,
            "format": "video/h264-mp4",
            "pingpong": False,
            "save_output": True,
        },
    }


def _ksampler(model: str, positive: str, negative: str, latent: str, p: VideoParams) -> Dict[str, Any]:
    return {
        "class_type": "KSampler",
        "inputs": {
            "model": [model, 0],
            "positive": [positive, 0],
            "negative": [negative, 0],
            "latent_image": [latent, 0],
            "seed": p.seed,
            "steps": p.steps,
            "cfg": p.cfg_scale,
            "sampler_name": "euler",
            "scheduler": "normal",
            "denoise": 1.0,
        },
    }


LTX_TEXT_ENCODER = "t5xxl_fp16.safetensors"


def build_ltx_video_workflow(p: VideoParams) -> Workflow:
    return {
        "1": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": p.model}},
        "2": {"class_type": "CLIPLoader", "inputs": {"clip_name": LTX_TEXT_ENCODER, "type": "ltxv"}},
        "3": {"class_type": "CLIPTextEncode", "inputs": {"text": p.prompt, "clip": ["2", 0]}},
        "4": {"class_type": "CLIPTextEncode", "inputs": {"text": p.negative_prompt, "clip": ["2", 0]}},
        "5": {
            "class_type": "EmptyLTXVLatentVideo",
            "inputs": {"width": p.width, "height": p.height, "length": p.num_frames, "batch_size": 1},
        },
        "6": _ksampler("1", "3", "4", "5", p),
        # The checkpoint bundles the VAE as its third output
        "7": {"class_type": "VAEDecode", "inputs": {"samples": ["6", 0], "vae": ["1", 2]}},
        "8": _video_combine("7", p.fps, "ltxv_output"),
    }


WAN21_TEXT_ENCODER = "umt5_xxl_fp8_e4m3fn_scaled.safetensors"
WAN21_VAE = "wan_2.1_vae.safetensors"


def build_wan21_workflow(p: VideoParams) -> Workflow:
    return {
        "1": {"class_type": "UNETLoader", "inputs": {"unet_name": p.model, "weight_dtype": "default"}},
        "2": {"class_type": "CLIPLoader", "inputs": {"clip_name": WAN21_TEXT_ENCODER, "type": "wan"}},
        "3": {"class_type": "VAELoader", "inputs": {"vae_name": WAN21_VAE}},
        "4": {"class_type": "CLIPTextEncode", "inputs": {"text": p.prompt, "clip": ["2", 0]}},
        "5": {"class_type": "CLIPTextEncode", "inputs": {"text": p.negative_prompt, "clip": ["2", 0]}},
        # Wan encodes frames as the latent batch dimension
        "6": {
            "class_type": "EmptySD3LatentImage",
            "inputs": {"width": p.width, "height": p.height, "batch_size": p.num_frames},
        },
        "7": _ksampler("1", "4", "5", "6", p),
        "8": {"class_type": "VAEDecode", "inputs": {"samples": ["7", 0], "vae": ["3", 0]}},
        "9": _video_combine("8", p.fps, "wan21_output"),
    }


TEMPLATES: List[WorkflowTemplate] = [
    WorkflowTemplate(
        family="ltx-video",
        display_name="LTX-Video",
        pattern=re.compile(r"ltx[_-]?video", re.IGNORECASE),
        output_node_id="8",
        defaults=WorkflowDefaults(
            width=512,
            height=320,
            num_frames=41,
            fps=8,
            steps=20,
            cfg_scale=3.0,
            negative_prompt="worst quality, blurry, distorted, disfigured, motion smear, motion artifacts",
        ),
        build=build_ltx_video_workflow,
    ),
    WorkflowTemplate(
        family="wan2.1",
        display_name="Wan 2.1",
        pattern=re.compile(r"wan2[._]?1", re.IGNORECASE),
        output_node_id="9",
        defaults=WorkflowDefaults(
            width=480,
            height=320,
            num_frames=25,
            fps=8,
            steps=20,
            cfg_scale=5.0,
            negative_prompt="worst quality, blurry, distorted",
        ),
        build=build_wan21_workflow,
    ),
]


def template_for_model(model_filename: str) -> Optional[WorkflowTemplate]:
    for template in TEMPLATES:
        if template.pattern.search(model_filename):
            return template
    return None


def is_known_video_model(model_filename: str) -> bool:
    return template_for_model(model_filename) is not None
