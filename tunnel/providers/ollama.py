"""
Ollama text provider.

Chat streams NDJSON from POST /api/chat; each line carries
``message.content`` and a ``done`` flag.
"""
from __future__ import annotations

import json
import logging
from typing import AsyncIterator, List, Optional, Sequence

import httpx

from shared.schemas import ChatChunk, ChatMessage, ChatOptions, ModelRecord
from tunnel.errors import ProtocolError
from tunnel.providers.base import TextProvider

log = logging.getLogger("tunnel.providers.ollama")


class OllamaProvider(TextProvider):
    name = "ollama"
    display_name = "Ollama"
    description = "Run open-source LLMs locally via CLI. Supports Llama, Mistral, Gemma, and more."
    liveness_path = "/api/tags"

    async def discover_models(self) -> List[ModelRecord]:
        try:
            async with self.client() as http:
                resp = await http.get("/api/tags", timeout=self.liveness_timeout)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Ollama model discovery failed: %s", e)
            return []

        models = []
        for m in data.get("models") or []:
            details = m.get("details") or {}
            models.append(ModelRecord(
                name=m["name"],
                provider=self.name,
                capability="text",
                size=m.get("size"),
                parameter_size=details.get("parameter_size"),
                quantization=details.get("quantization_level"),
            ))
        return models

    async def chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[ChatChunk]:
        opts = options or ChatOptions()
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
            # Ollama uses num_predict, not max_tokens
            "options": {
                k: v
                for k, v in {"temperature": opts.temperature, "num_predict": opts.max_tokens}.items()
                if v is not None
            },
        }

        async with self.translate_errors(model):
            async with self.client(httpx.Timeout(10.0, read=None)) as http:
                async with http.stream("POST", "/api/chat", json=payload) as resp:
                    await self.raise_for_status(resp, "Ollama request", model)
                    async for raw_line in resp.aiter_lines():
                        line = raw_line.strip()
                        if not line:
                            continue
                        try:
                            obj = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if obj.get("error"):
                            log.error("Ollama stream error for %s: %s", model, obj["error"])
                            raise ProtocolError(f"Ollama request failed: {obj['error']}")
                        message = obj.get("message") or {}
                        done = bool(obj.get("done"))
                        yield ChatChunk(content=message.get("content") or "", done=done)
                        if done:
                            break
