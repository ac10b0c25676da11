"""
ComfyUI provider.

Serves two kinds of model:
- video checkpoints that a job graph template recognises (LTX-Video, Wan 2.1)
- the aggregated saved-workflow records from WorkflowDiscovery
Both run through GenerativeJob.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from shared.schemas import GenerationOptions, JobResult, ModelRecord, NumberOptions, ParameterSchema
from tunnel.comfy_ws import ChannelFactory, GenerativeJob, open_websocket
from tunnel.config import ComfyConfig
from tunnel.errors import GraphValidationError, ModelNotFoundError
from tunnel.http_client import LoggedHTTPClient
from tunnel.providers.base import GenerativeProvider, ProgressCallback
from tunnel.providers.comfy_discovery import WORKFLOW_MODEL_NAMES, WorkflowDiscovery, is_api_format
from tunnel.workflows.registry import find_template

log = logging.getLogger("tunnel.providers.comfyui")

# (node class, input holding the model file list)
MODEL_LOADERS = (
    ("CheckpointLoaderSimple", "ckpt_name"),
    ("UNETLoader", "unet_name"),
)
MODEL_DIRS = ("checkpoints", "diffusion_models")

_WORKFLOW_CAPABILITY = {name: capability for capability, name in WORKFLOW_MODEL_NAMES.items()}


class ComfyUIProvider(GenerativeProvider):
    name = "comfyui"
    display_name = "ComfyUI"
    description = "Video generation (LTX-Video, Wan2.1)"
    capabilities = ("video", "image")
    liveness_path = "/system_stats"

    def __init__(
        self,
        base_url: str,
        install_path: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: ChannelFactory = open_websocket,
        settings: Optional[ComfyConfig] = None,
    ):
        super().__init__(base_url, install_path=install_path, transport=transport)
        self.connect = connect
        self.settings = settings or ComfyConfig()
        # capability -> workflow name -> api graph, from the last discovery pass
        self.workflows: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def supports(self, kind: Optional[str], model: Optional[str] = None) -> bool:
        if model in _WORKFLOW_CAPABILITY:
            return kind == _WORKFLOW_CAPABILITY[model]
        if model is not None and find_template(model):
            # Template graphs always end in a video combine node
            return kind == "video"
        return super().supports(kind, model)

    async def _loader_models(self, http: LoggedHTTPClient, node_class: str, input_name: str) -> List[str]:
        try:
            resp = await http.get(f"/object_info/{node_class}", timeout=5.0)
            resp.raise_for_status()
            node_info = resp.json().get(node_class) or {}
            return list(node_info["input"]["required"][input_name][0])
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            log.debug("No %s list from %s: %s", input_name, node_class, e)
            return []

    def _scan_model_dirs(self) -> List[str]:
        if self.install_path is None:
            return []
        names: List[str] = []
        for sub in MODEL_DIRS:
            model_dir = self.install_path / "models" / sub
            if not model_dir.is_dir():
                continue
            try:
                names.extend(sorted(p.name for p in model_dir.iterdir() if p.is_file()))
            except OSError as e:
                log.warning("Could not read %s: %s", model_dir, e)
        return names

    async def discover_models(self) -> List[ModelRecord]:
        async with self.client() as http:
            names: List[str] = []
            for node_class, input_name in MODEL_LOADERS:
                names.extend(await self._loader_models(http, node_class, input_name))
            video_models = _dedupe(n for n in names if find_template(n))
            if not video_models:
                video_models = _dedupe(n for n in self._scan_model_dirs() if find_template(n))

            schemas = await self.get_parameter_schemas() if video_models else None
            records = [
                ModelRecord(
                    name=model,
                    provider=self.name,
                    capability="video",
                    parameter_size=find_template(model).display_name,
                    parameters=schemas,
                )
                for model in video_models
            ]

            discovery = WorkflowDiscovery(http, self.install_path)
            workflow_records = await discovery.discover()
            self.workflows = discovery.workflows_by_name(workflow_records)

        return records + workflow_records

    async def get_parameter_schemas(self) -> List[ParameterSchema]:
        return [
            ParameterSchema(
                type="number",
                label="Width",
                variable="width",
                help_text="Video width in pixels. Larger = better quality but bigger file.",
                default_value=512,
                number_options=NumberOptions(min=256, max=1280, step=64),
            ),
            ParameterSchema(
                type="number",
                label="Height",
                variable="height",
                help_text="Video height in pixels. Larger = better quality but bigger file.",
                default_value=320,
                number_options=NumberOptions(min=256, max=1280, step=64),
            ),
            ParameterSchema(
                type="number",
                label="Frames",
                variable="numFrames",
                help_text="Number of frames to generate. More frames = longer video but bigger file. "
                          "Keep low to avoid upload limits.",
                default_value=41,
                number_options=NumberOptions(min=9, max=97, step=8),
            ),
            ParameterSchema(
                type="number",
                label="FPS",
                variable="fps",
                help_text="Frames per second for the output video.",
                default_value=8,
                number_options=NumberOptions(min=4, max=30, step=1),
            ),
            ParameterSchema(
                type="number",
                label="Steps",
                variable="steps",
                help_text="Number of denoising steps. More steps = higher quality but slower.",
                default_value=20,
                number_options=NumberOptions(min=10, max=100, step=1),
            ),
            ParameterSchema(
                type="number",
                label="CFG Scale",
                variable="cfgScale",
                help_text="How strongly the video should follow the prompt. Higher = more literal.",
                default_value=7,
                number_options=NumberOptions(min=1, max=20, step=0.5),
            ),
            ParameterSchema(
                type="number",
                label="Seed",
                variable="seed",
                help_text="A specific value used to guide randomness. Use -1 for random.",
                default_value=-1,
                number_options=NumberOptions(min=-1, max=2147483647),
            ),
            ParameterSchema(
                type="text",
                label="Negative Prompt",
                variable="negativePrompt",
                help_text="Things you don't want in the video",
                placeholder="worst quality, blurry, distorted",
            ),
        ]

    def resolve_workflow(self, model: str, selected: Any) -> Dict[str, Any]:
        """
        Pick the graph for an aggregated workflow record. ``selected`` is a
        workflow name, an API-format graph (dict or JSON text), or None when
        exactly one workflow is available.
        """
        capability = _WORKFLOW_CAPABILITY[model]
        available = self.workflows.get(capability, {})

        if isinstance(selected, str) and selected.lstrip().startswith("{"):
            try:
                selected = json.loads(selected)
            except json.JSONDecodeError as e:
                raise GraphValidationError(f"Workflow is not valid JSON: {e}") from e

        if isinstance(selected, dict):
            if not is_api_format(selected):
                raise GraphValidationError("Workflow must be in ComfyUI API format")
            return selected
        if isinstance(selected, str):
            if selected not in available:
                raise ModelNotFoundError(f"Workflow {selected} not found in saved ComfyUI workflows")
            return available[selected]
        if len(available) == 1:
            return next(iter(available.values()))
        raise GraphValidationError(f"No workflow selected for {model}")

    def _job(self, http: LoggedHTTPClient, on_progress: Optional[ProgressCallback]) -> GenerativeJob:
        return GenerativeJob(
            self.base_url,
            http,
            connect=self.connect,
            timeout_seconds=self.settings.job_timeout_s,
            history_timeout=self.settings.history_timeout_s,
            download_timeout=self.settings.download_timeout_s,
            poll_interval=self.settings.poll_interval_s,
            on_progress=on_progress,
        )

    async def generate(
        self,
        model: str,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobResult:
        opts = options or GenerationOptions()
        async with self.client() as http:
            job = self._job(http, on_progress)
            if model in _WORKFLOW_CAPABILITY:
                graph = self.resolve_workflow(model, opts.workflow)
                # Saved workflows carry their own outputs; every output node is scanned
                return await job.run_graph(graph)
            return await job.run_template(model, prompt, opts)


def _dedupe(names) -> List[str]:
    seen: List[str] = []
    for name in names:
        if name not in seen:
            seen.append(name)
    return seen
