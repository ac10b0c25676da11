"""
LM Studio text provider (OpenAI-compatible server).
"""
from __future__ import annotations

import json
import logging
from typing import AsyncIterator, List, Optional, Sequence

import httpx

from shared.schemas import ChatChunk, ChatMessage, ChatOptions, ModelRecord
from tunnel.providers.base import TextProvider

log = logging.getLogger("tunnel.providers.lmstudio")

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"


class LMStudioProvider(TextProvider):
    name = "lmstudio"
    display_name = "LM Studio"
    description = "Desktop app for running LLMs locally with a visual interface. No terminal required."
    liveness_path = "/models"
    liveness_timeout = 3.0

    async def discover_models(self) -> List[ModelRecord]:
        try:
            async with self.client() as http:
                resp = await http.get("/models", timeout=self.liveness_timeout)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("LM Studio model discovery failed: %s", e)
            return []

        return [
            ModelRecord(name=m["id"], provider=self.name, capability="text")
            for m in data.get("data") or []
            if m.get("id")
        ]

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
        }
        if opts.temperature is not None:
            payload["temperature"] = opts.temperature
        if opts.max_tokens is not None:
            payload["max_tokens"] = opts.max_tokens

        async with self.translate_errors(model):
            async with self.client(httpx.Timeout(10.0, read=None)) as http:
                async with http.stream("POST", "/chat/completions", json=payload) as resp:
                    await self.raise_for_status(resp, "LM Studio request", model)
                    async for raw_line in resp.aiter_lines():
                        line = raw_line.strip()
                        if not line.startswith(SSE_PREFIX):
                            continue
                        data = line[len(SSE_PREFIX):]
                        if data == SSE_DONE:
                            yield ChatChunk(content="", done=True)
                            return
                        try:
                            parsed = json.loads(data)
                            choice = parsed["choices"][0]
                        except (json.JSONDecodeError, KeyError, IndexError, TypeError):
                            # Malformed chunks are skipped
                            continue
                        content = (choice.get("delta") or {}).get("content") or ""
                        if content:
                            yield ChatChunk(content=content)
        yield ChatChunk(content="", done=True)
