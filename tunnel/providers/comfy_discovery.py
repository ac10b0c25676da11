"""
Discovery of user-saved ComfyUI workflows.

Saved workflows are bundled into at most one model record per
capability ("ComfyUI Image Generation", "ComfyUI Video Generation"),
each listing its runnable workflows in a comfyWorkflow parameter.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from shared.schemas import ModelRecord, ParameterSchema
from tunnel.http_client import LoggedHTTPClient

log = logging.getLogger("tunnel.providers.comfy_discovery")

VIDEO_OUTPUT_NODES = ("VHS_VideoCombine", "SaveVideo")

WORKFLOW_MODEL_NAMES = {
    "image": "ComfyUI Image Generation",
    "video": "ComfyUI Video Generation",
}

HINT_RESTART = "Restart ComfyUI to enable"
HINT_NO_CONVERTER = "Workflow converter not available"

CONVERTER_NODE_DIR = "comfyui-workflow-to-api-converter-endpoint"
CONVERTER_NODE_FILES = ("__init__.py", "workflow_converter.py")

_NUMERIC_KEY = re.compile(r"^\d+$")


def is_api_format(workflow: Any) -> bool:
    """API format maps numeric node ids to objects carrying ``class_type``."""
    if not isinstance(workflow, dict) or not workflow:
        return False
    return any(
        _NUMERIC_KEY.match(str(key)) and isinstance(node, dict) and "class_type" in node
        for key, node in workflow.items()
    )


def _node_types(workflow: Dict[str, Any]) -> List[str]:
    if is_api_format(workflow):
        return [node["class_type"] for node in workflow.values() if isinstance(node, dict) and "class_type" in node]
    # UI format: {"nodes": [{"type": ...}, ...], "links": [...]}
    return [node.get("type", "") for node in workflow.get("nodes") or [] if isinstance(node, dict)]


def detect_capability(workflow: Dict[str, Any]) -> str:
    types = _node_types(workflow)
    if any(t in VIDEO_OUTPUT_NODES for t in types):
        return "video"
    # SaveImage/PreviewImage, or nothing recognisable
    return "image"


class WorkflowDiscovery:
    """
    One discovery pass. The converter check result lives on this object,
    so each pass asks ComfyUI again.
    """

    def __init__(
        self,
        http: LoggedHTTPClient,
        install_path: Optional[Path] = None,
    ):
        self.http = http
        self.install_path = install_path
        self._converter_available: Optional[bool] = None

    @property
    def converter_on_disk(self) -> bool:
        """True when the converter custom node is installed (ComfyUI may not have loaded it yet)."""
        if self.install_path is None:
            return False
        node_dir = self.install_path / "custom_nodes" / CONVERTER_NODE_DIR
        return all((node_dir / f).is_file() for f in CONVERTER_NODE_FILES)

    @property
    def workflows_dir(self) -> Optional[Path]:
        if self.install_path is None:
            return None
        return self.install_path / "user" / "default" / "workflows"

    async def converter_available(self) -> bool:
        if self._converter_available is None:
            try:
                resp = await self.http.post("/workflow/convert", json={"nodes": [], "links": []}, timeout=5.0)
                # Unknown routes come back as 405, so only 200 counts
                self._converter_available = resp.status_code == 200
            except httpx.HTTPError as e:
                log.debug("Workflow converter check failed: %s", e)
                self._converter_available = False
        return self._converter_available

    async def convert(self, workflow: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.http.post("/workflow/convert", json=workflow, timeout=10.0)
        resp.raise_for_status()
        return resp.json()

    async def list_workflow_files(self) -> List[str]:
        try:
            resp = await self.http.get(
                "/userdata",
                params={"dir": "workflows/", "recurse": "true", "full_info": "true"},
                timeout=5.0,
            )
            if resp.status_code < 400:
                entries = resp.json()
                paths = [e if isinstance(e, str) else e.get("path", "") for e in entries]
                return [p for p in paths if p.endswith(".json")]
        except (httpx.HTTPError, ValueError) as e:
            log.debug("Listing workflows via API failed: %s", e)

        root = self.workflows_dir
        if root is None or not root.is_dir():
            return []
        return sorted(str(p.relative_to(root).as_posix()) for p in root.rglob("*.json"))

    async def load_workflow(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            # {file} is a single path segment on the server, so slashes are encoded too
            resp = await self.http.get(f"/userdata/{quote('workflows/' + path, safe='')}", timeout=5.0)
            if resp.status_code < 400:
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.debug("Loading workflow %s via API failed: %s", path, e)

        root = self.workflows_dir
        if root is None:
            return None
        try:
            with open(root / path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            log.debug("Loading workflow %s from disk failed: %s", path, e)
            return None

    async def discover(self) -> List[ModelRecord]:
        files = await self.list_workflow_files()
        if not files:
            return []
        converter = await self.converter_available()

        converted: Dict[str, List[Dict[str, Any]]] = {"image": [], "video": []}
        unconverted = set()

        for path in files:
            workflow = await self.load_workflow(path)
            if not isinstance(workflow, dict):
                continue
            name = Path(path).stem

            if is_api_format(workflow):
                api_workflow = workflow
            elif converter:
                try:
                    api_workflow = await self.convert(workflow)
                except (httpx.HTTPError, ValueError) as e:
                    log.warning("Skipping workflow %s: conversion failed: %s", name, e)
                    continue
            else:
                unconverted.add(detect_capability(workflow))
                continue

            converted[detect_capability(api_workflow)].append({"name": name, "workflow": api_workflow})

        needs_restart = self.converter_on_disk and not converter
        models: List[ModelRecord] = []
        for capability in ("image", "video"):
            if converted[capability]:
                models.append(ModelRecord(
                    name=WORKFLOW_MODEL_NAMES[capability],
                    provider="comfyui",
                    capability=capability,
                    parameters=[ParameterSchema(
                        type="comfyWorkflow",
                        label="Workflow",
                        variable="workflow",
                        comfy_workflow_options={"availableWorkflows": converted[capability]},
                    )],
                ))
            elif capability in unconverted:
                models.append(ModelRecord(
                    name=WORKFLOW_MODEL_NAMES[capability],
                    provider="comfyui",
                    capability=capability,
                    status_hint=HINT_RESTART if needs_restart else HINT_NO_CONVERTER,
                ))

        log.info(
            "Discovered %d saved workflows (%d image, %d video, unconverted: %s)",
            len(files), len(converted["image"]), len(converted["video"]), sorted(unconverted) or "none",
        )
        return models

    def workflows_by_name(self, models: List[ModelRecord]) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """{capability: {workflow name: api graph}} for the records this pass produced."""
        out: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for record in models:
            for param in record.parameters or []:
                if param.type != "comfyWorkflow" or not param.comfy_workflow_options:
                    continue
                out[record.capability] = {
                    w["name"]: w["workflow"] for w in param.comfy_workflow_options.get("availableWorkflows", [])
                }
        return out
