"""Tests for the job graph template registry and graph builders."""

import dataclasses
import json
import random

import pytest

from shared.schemas import GenerationOptions
from tunnel.workflows.registry import (
    AUTO_SEED,
    LTX_VIDEO,
    SEED_SPACE,
    WAN21,
    find_template,
    is_known_video_model,
    matching_templates,
    resolve_params,
    resolve_seed,
)

LTX_FILENAMES = [
    "ltx-video-2b-v0.9.5.safetensors",
    "ltx-video-2b-v0.9.1.safetensors",
    "ltxv/ltx_video_13b_distilled.safetensors",
    "LTX-Video-0.9.7-dev.safetensors",
]
WAN_FILENAMES = [
    "wan2.1_t2v_1.3B_fp16.safetensors",
    "wan2.1_t2v_14B_fp8_e4m3fn.safetensors",
    "Wan2_1-T2V-14B_fp8.safetensors",
    "wan21_t2v.safetensors",
]
NON_VIDEO_FILENAMES = [
    "sd_xl_base_1.0.safetensors",
    "v1-5-pruned-emaonly.ckpt",
    "flux1-dev.safetensors",
    "wan2.2_t2v_5B.safetensors",
]


class TestLookup:
    @pytest.mark.parametrize("filename", LTX_FILENAMES)
    def test_ltx_filenames(self, filename):
        assert find_template(filename) is LTX_VIDEO

    @pytest.mark.parametrize("filename", WAN_FILENAMES)
    def test_wan_filenames(self, filename):
        assert find_template(filename) is WAN21

    @pytest.mark.parametrize("filename", LTX_FILENAMES + WAN_FILENAMES)
    def test_no_two_templates_match_the_same_file(self, filename):
        assert len(matching_templates(filename)) == 1

    @pytest.mark.parametrize("filename", NON_VIDEO_FILENAMES)
    def test_other_models_have_no_template(self, filename):
        assert find_template(filename) is None
        assert is_known_video_model(filename) is False


class TestSeed:
    def test_explicit_seed_is_kept(self):
        assert resolve_seed(1234) == 1234
        assert resolve_seed(0) == 0

    def test_auto_seed_draws_in_range(self):
        rng = random.Random(99)
        seeds = [resolve_seed(AUTO_SEED, rng) for _ in range(200)]
        assert all(0 <= s < SEED_SPACE for s in seeds)
        assert len(set(seeds)) > 1

    def test_missing_seed_is_auto(self):
        rng = random.Random(5)
        expected = random.Random(5).randrange(SEED_SPACE)
        assert resolve_seed(None, rng) == expected

    def test_build_refuses_unresolved_seed(self):
        params = resolve_params(LTX_VIDEO, LTX_FILENAMES[0], "a cat", GenerationOptions(seed=1))
        unresolved = dataclasses.replace(params, seed=AUTO_SEED)
        with pytest.raises(ValueError):
            LTX_VIDEO.build(unresolved)


class TestResolveParams:
    def test_defaults_fill_missing_options(self):
        params = resolve_params(WAN21, WAN_FILENAMES[0], "a dog", GenerationOptions(seed=7))
        assert (params.width, params.height) == (480, 320)
        assert params.num_frames == 25
        assert params.fps == 8
        assert params.cfg_scale == 5.0
        assert params.vae == "wan_2.1_vae.safetensors"
        assert params.negative_prompt == WAN21.defaults.negative_prompt

    def test_caller_options_win(self):
        opts = GenerationOptions(width=768, height=512, num_frames=49, fps=24, steps=30, cfg_scale=2.5,
                                 seed=11, negative_prompt="blurry")
        params = resolve_params(LTX_VIDEO, LTX_FILENAMES[0], "a cat", opts)
        assert (params.width, params.height, params.num_frames, params.fps) == (768, 512, 49, 24)
        assert (params.steps, params.cfg_scale, params.seed) == (30, 2.5, 11)
        assert params.negative_prompt == "blurry"

    def test_camel_case_config_is_accepted(self):
        opts = GenerationOptions.model_validate({"numFrames": 17, "cfgScale": 4, "negativePrompt": "ugly"})
        params = resolve_params(LTX_VIDEO, LTX_FILENAMES[0], "x", opts, rng=random.Random(1))
        assert params.num_frames == 17
        assert params.cfg_scale == 4
        assert params.negative_prompt == "ugly"


class TestBuild:
    @pytest.mark.parametrize("template,model", [(LTX_VIDEO, LTX_FILENAMES[0]), (WAN21, WAN_FILENAMES[0])])
    def test_build_is_deterministic(self, template, model):
        params = resolve_params(template, model, "a lighthouse at dusk", GenerationOptions(seed=314159))
        first, node_a = template.build(params)
        second, node_b = template.build(params)
        assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)
        assert node_a == node_b == template.output_node_id

    def test_ltx_graph_shape(self):
        params = resolve_params(LTX_VIDEO, LTX_FILENAMES[0], "a cat", GenerationOptions(seed=3))
        graph, output_node = LTX_VIDEO.build(params)

        assert output_node == "8"
        assert graph["8"]["class_type"] == "VHS_VideoCombine"
        assert graph["8"]["inputs"]["frame_rate"] == 8
        assert graph["1"]["inputs"]["ckpt_name"] == LTX_FILENAMES[0]
        assert graph["2"]["inputs"] == {"clip_name": "t5xxl_fp16.safetensors", "type": "ltxv"}
        assert graph["5"]["inputs"]["length"] == 41
        assert graph["6"]["inputs"]["seed"] == 3

    def test_wan_graph_shape(self):
        params = resolve_params(WAN21, WAN_FILENAMES[0], "a dog", GenerationOptions(seed=4, num_frames=33))
        graph, output_node = WAN21.build(params)

        assert output_node == "9"
        assert graph["1"]["class_type"] == "UNETLoader"
        assert graph["1"]["inputs"]["unet_name"] == WAN_FILENAMES[0]
        assert graph["6"]["inputs"]["batch_size"] == 33
        assert graph["7"]["inputs"]["seed"] == 4
        assert graph["7"]["inputs"]["cfg"] == 5.0

    def test_every_link_points_at_an_existing_node(self):
        for template, model in ((LTX_VIDEO, LTX_FILENAMES[0]), (WAN21, WAN_FILENAMES[0])):
            graph, _ = template.build(resolve_params(template, model, "p", GenerationOptions(seed=1)))
            for node in graph.values():
                for value in node["inputs"].values():
                    if isinstance(value, list):
                        assert value[0] in graph
