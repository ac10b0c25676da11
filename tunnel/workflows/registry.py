"""
Job graph template registry.

Maps a model filename to the template that knows how to turn a small
parameter set into a ComfyUI API-format graph.

Lookup is first-match-wins over an ordered list of (predicate, template)
pairs. Predicates must not overlap: a real model filename is expected to
match exactly one entry (tests pin this down with known filenames).
"""
from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.schemas import GenerationOptions
from tunnel.workflows.ltx_video import LTX_VIDEO_DEFAULTS, LTX_VIDEO_OUTPUT_NODE, build_ltx_video_graph
from tunnel.workflows.params import GraphParams, TemplateDefaults
from tunnel.workflows.wan21 import WAN21_DEFAULTS, WAN21_OUTPUT_NODE, build_wan21_graph

AUTO_SEED = -1
SEED_SPACE = 2 ** 32

Graph = Dict[str, Any]
ModelPredicate = Callable[[str], bool]


@dataclass(frozen=True)
class JobGraphTemplate:
    family: str
    display_name: str
    defaults: TemplateDefaults
    output_node_id: str
    builder: Callable[[GraphParams], Graph]

    def build(self, params: GraphParams) -> Tuple[Graph, str]:
        """Pure: identical params always give an identical graph."""
        if params.seed == AUTO_SEED:
            raise ValueError("seed must be resolved before building a graph")
        return self.builder(params), self.output_node_id


def filename_pattern(pattern: str) -> ModelPredicate:
    regex = re.compile(pattern, re.IGNORECASE)
    return lambda name: regex.search(name) is not None


LTX_VIDEO = JobGraphTemplate(
    family="ltx-video",
    display_name="LTX-Video",
    defaults=LTX_VIDEO_DEFAULTS,
    output_node_id=LTX_VIDEO_OUTPUT_NODE,
    builder=build_ltx_video_graph,
)

WAN21 = JobGraphTemplate(
    family="wan2.1",
    display_name="Wan 2.1",
    defaults=WAN21_DEFAULTS,
    output_node_id=WAN21_OUTPUT_NODE,
    builder=build_wan21_graph,
)

TEMPLATE_REGISTRY: List[Tuple[ModelPredicate, JobGraphTemplate]] = [
    (filename_pattern(r"ltx[_-]?video"), LTX_VIDEO),
    (filename_pattern(r"wan2[._]?1"), WAN21),
]


def find_template(model: str) -> Optional[JobGraphTemplate]:
    for predicate, template in TEMPLATE_REGISTRY:
        if predicate(model):
            return template
    return None


def matching_templates(model: str) -> List[JobGraphTemplate]:
    """Every template whose predicate accepts ``model`` (used to check for overlaps)."""
    return [template for predicate, template in TEMPLATE_REGISTRY if predicate(model)]


def is_known_video_model(model: str) -> bool:
    return find_template(model) is not None


def supported_families() -> List[JobGraphTemplate]:
    return [template for _, template in TEMPLATE_REGISTRY]


def resolve_seed(seed: Optional[int], rng: Optional[random.Random] = None) -> int:
    """Return ``seed`` unless it is missing or AUTO_SEED; then draw from [0, 2**32)."""
    if seed is not None and seed != AUTO_SEED:
        return seed
    return (rng or random).randrange(SEED_SPACE)


def _pick(value, default):
    return default if value is None else value


def resolve_params(
    template: JobGraphTemplate,
    model: str,
    prompt: str,
    options: Optional[GenerationOptions] = None,
    rng: Optional[random.Random] = None,
) -> GraphParams:
    """Merge caller options over template defaults and resolve the seed once."""
    opts = options or GenerationOptions()
    d = template.defaults
    return GraphParams(
        model=model,
        prompt=prompt,
        negative_prompt=opts.negative_prompt or d.negative_prompt,
        width=_pick(opts.width, d.width),
        height=_pick(opts.height, d.height),
        num_frames=_pick(opts.num_frames, d.num_frames),
        fps=_pick(opts.fps, d.fps),
        steps=_pick(opts.steps, d.steps),
        cfg_scale=_pick(opts.cfg_scale, d.cfg_scale),
        seed=resolve_seed(opts.seed, rng),
        text_encoder=d.text_encoder,
        vae=d.vae,
    )
