"""
Provider registry: builds the configured providers and fans liveness and
discovery out across them.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import httpx

from shared.schemas import ModelRecord
from tunnel.comfy_ws import ChannelFactory, open_websocket
from tunnel.config import TunnelConfig
from tunnel.logging_utils import get_logger
from tunnel.providers.base import Provider
from tunnel.providers.comfyui import ComfyUIProvider
from tunnel.providers.lmstudio import LMStudioProvider
from tunnel.providers.ollama import OllamaProvider
from tunnel.providers.stable_diffusion import StableDiffusionProvider

log = logging.getLogger("tunnel.providers.registry")

PROVIDER_CLASSES = (OllamaProvider, LMStudioProvider, StableDiffusionProvider, ComfyUIProvider)


def all_providers(
    cfg: TunnelConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    connect: ChannelFactory = open_websocket,
) -> List[Provider]:
    providers: List[Provider] = []
    for cls in PROVIDER_CLASSES:
        kwargs = dict(
            base_url=cfg.provider_base_url(cls.name),
            install_path=cfg.provider_install_path(cls.name),
            transport=transport,
        )
        if cls is ComfyUIProvider:
            providers.append(ComfyUIProvider(connect=connect, settings=cfg.comfyui, **kwargs))
        else:
            providers.append(cls(**kwargs))
    return providers


def get_provider(providers: List[Provider], name: str) -> Optional[Provider]:
    for provider in providers:
        if provider.name == name:
            return provider
    return None


async def provider_statuses(providers: List[Provider]) -> List[Tuple[Provider, bool]]:
    running = await asyncio.gather(*(p.is_running() for p in providers))
    return list(zip(providers, running))


async def discover_running_providers(providers: List[Provider]) -> List[Provider]:
    return [p for p, running in await provider_statuses(providers) if running]


async def discover_all_models(providers: List[Provider]) -> List[ModelRecord]:
    """Models from every running provider, in provider order."""
    running = await discover_running_providers(providers)
    results = await asyncio.gather(*(p.discover_models() for p in running), return_exceptions=True)

    models: List[ModelRecord] = []
    for provider, result in zip(running, results):
        if isinstance(result, BaseException):
            log.warning("Model discovery failed for %s: %s", provider.display_name, result)
            continue
        models.extend(result)

    get_logger().info(
        "models_discovered",
        providers=[p.name for p in running],
        model_count=len(models),
    )
    return models


def build_model_map(providers: List[Provider], models: List[ModelRecord]) -> Dict[str, Provider]:
    """model name -> owning provider. On a name clash the first provider wins."""
    model_map: Dict[str, Provider] = {}
    for record in models:
        provider = get_provider(providers, record.provider)
        if provider is None or record.name in model_map:
            continue
        model_map[record.name] = provider
    return model_map
