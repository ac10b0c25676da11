"""
Stable Diffusion WebUI (AUTOMATIC1111 API) image provider.

Generation is a single blocking POST /sdapi/v1/txt2img; progress comes
from polling /sdapi/v1/progress alongside it.
"""
from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.schemas import (
    GenerationOptions,
    JobResult,
    ModelRecord,
    NumberOptions,
    ParameterSchema,
    ProgressEvent,
    SelectOption,
)
from tunnel.errors import ProtocolError
from tunnel.providers.base import GenerativeProvider, ProgressCallback

log = logging.getLogger("tunnel.providers.stable_diffusion")

PROGRESS_POLL_INTERVAL_S = 0.5

DEFAULT_STEPS = 20
DEFAULT_SIZE = 512
DEFAULT_CFG_SCALE = 7.0
DEFAULT_SAMPLER = "Euler a"

DEFAULT_SAMPLERS = [
    "Euler a", "Euler", "LMS", "Heun", "DPM2", "DPM2 a", "DPM++ 2S a",
    "DPM++ 2M", "DPM++ SDE", "DPM fast", "DPM adaptive", "LMS Karras",
    "DPM2 Karras", "DPM2 a Karras", "DPM++ 2S a Karras", "DPM++ 2M Karras",
    "DPM++ SDE Karras", "DDIM", "PLMS", "UniPC",
]


def dimension_options() -> List[SelectOption]:
    return [SelectOption(label=f"{size}px", value=str(size)) for size in range(256, 2049, 64)]


class StableDiffusionProvider(GenerativeProvider):
    name = "stable-diffusion"
    display_name = "Stable Diffusion WebUI"
    description = "Generate images locally using Stable Diffusion checkpoints. Runs as a local web UI."
    capabilities = ("image",)
    liveness_path = "/sdapi/v1/sd-models"

    async def discover_models(self) -> List[ModelRecord]:
        try:
            async with self.client() as http:
                resp = await http.get("/sdapi/v1/sd-models", timeout=self.liveness_timeout)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Stable Diffusion model discovery failed: %s", e)
            return []

        schemas = await self.get_parameter_schemas()
        return [
            ModelRecord(name=m["model_name"], provider=self.name, capability="image", parameters=schemas)
            for m in data
            if m.get("model_name")
        ]

    async def get_samplers(self) -> List[str]:
        try:
            async with self.client() as http:
                resp = await http.get("/sdapi/v1/samplers", timeout=self.liveness_timeout)
                resp.raise_for_status()
                names = [s["name"] for s in resp.json() if s.get("name")]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.debug("Falling back to default sampler list: %s", e)
            return list(DEFAULT_SAMPLERS)
        return names or list(DEFAULT_SAMPLERS)

    async def get_parameter_schemas(self) -> List[ParameterSchema]:
        samplers = await self.get_samplers()
        dims = dimension_options()
        return [
            ParameterSchema(
                type="select",
                label="Sampler",
                variable="sampler",
                help_text="The sampling method used for image generation",
                default_value=DEFAULT_SAMPLER,
                select_options=[SelectOption(label=name, value=name) for name in samplers],
            ),
            ParameterSchema(type="select", label="Width", variable="width", default_value="512", select_options=dims),
            ParameterSchema(type="select", label="Height", variable="height", default_value="512", select_options=dims),
            ParameterSchema(
                type="number",
                label="Steps",
                variable="steps",
                help_text="Number of denoising steps. More steps = higher quality but slower.",
                default_value="20",
                number_options=NumberOptions(min=1, max=150, step=1),
            ),
            ParameterSchema(
                type="number",
                label="CFG Scale",
                variable="cfgScale",
                help_text="How strongly the image should follow the prompt. Higher = more literal.",
                default_value="7",
                number_options=NumberOptions(min=1, max=30, step=0.5),
            ),
            ParameterSchema(
                type="seed",
                label="Seed",
                variable="seed",
                help_text="A specific value used to guide the 'randomness' of generation. Use -1 for random.",
                default_value="-1",
            ),
            ParameterSchema(
                type="text",
                label="Negative Prompt",
                variable="negativePrompt",
                help_text="Things you don't want in the image",
                placeholder="blurry, low quality, distorted",
            ),
        ]

    async def get_current_model(self, http) -> Optional[str]:
        try:
            resp = await http.get("/sdapi/v1/options", timeout=self.liveness_timeout)
            resp.raise_for_status()
            return resp.json().get("sd_model_checkpoint") or None
        except (httpx.HTTPError, ValueError) as e:
            log.debug("Could not read the loaded checkpoint: %s", e)
            return None

    async def set_model(self, http, model: str) -> None:
        resp = await http.post("/sdapi/v1/options", json={"sd_model_checkpoint": model})
        if resp.status_code >= 400:
            raise ProtocolError(f"Failed to switch model: {resp.text}")
        log.info("Switched Stable Diffusion checkpoint to %s", model)

    async def _poll_progress(self, http, on_progress: ProgressCallback) -> None:
        """Forward /sdapi/v1/progress until cancelled or the backend stops answering."""
        while True:
            try:
                resp = await http.get("/sdapi/v1/progress", timeout=self.liveness_timeout)
                if resp.status_code >= 400:
                    return
                progress = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                log.debug("Progress poll stopped: %s", e)
                return

            state = progress.get("state") or {}
            event = ProgressEvent(
                step=int(state.get("sampling_step") or 0),
                total_steps=int(state.get("sampling_steps") or 0),
                preview=progress.get("current_image"),
            )
            try:
                result = on_progress(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning("Progress callback error: %s", e)

            await asyncio.sleep(PROGRESS_POLL_INTERVAL_S)

    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobResult:
        opts = options or GenerationOptions()
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "negative_prompt": opts.negative_prompt or "",
            "steps": opts.steps or DEFAULT_STEPS,
            "width": opts.width or DEFAULT_SIZE,
            "height": opts.height or DEFAULT_SIZE,
            "cfg_scale": opts.cfg_scale or DEFAULT_CFG_SCALE,
            "seed": opts.seed if opts.seed is not None else -1,
            "sampler_name": opts.sampler or DEFAULT_SAMPLER,
        }

        async with self.translate_errors(model):
            async with self.client(httpx.Timeout(10.0, read=None)) as http:
                current = await self.get_current_model(http)
                if current and model not in current:
                    await self.set_model(http, model)

                poller = None
                if on_progress:
                    poller = asyncio.create_task(self._poll_progress(http, on_progress))
                try:
                    resp = await http.post("/sdapi/v1/txt2img", json=payload)
                finally:
                    if poller:
                        poller.cancel()
                        await asyncio.gather(poller, return_exceptions=True)

                if resp.status_code >= 400:
                    raise ProtocolError(f"Image generation failed: {resp.status_code} {resp.text}")
                result = resp.json()

        images = result.get("images") or []
        if not images:
            raise ProtocolError("No images returned from Stable Diffusion")

        seed = None
        try:
            info = json.loads(result.get("info") or "{}")
            if isinstance(info.get("seed"), int):
                seed = info["seed"]
        except (json.JSONDecodeError, AttributeError) as e:
            log.debug("Unparseable txt2img info: %s", e)

        return JobResult.artifact(base64.b64decode(images[0]), "image/png", seed=seed)
