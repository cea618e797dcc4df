from __future__ import annotations

import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from shared.schemas import ChatChunk, ChatMessage, LocalModel
from tunnel.backends.base import ChatOptions, TextProvider
from tunnel.errors import ModelNotFoundError, ProviderError
from tunnel.http_client import LoggedHTTPClient, ollama_client

log = logging.getLogger("mindstudio-tunnel.ollama")


class OllamaProvider(TextProvider):
    name = "ollama"
    display_name = "Ollama"
    health_path = "/api/tags"

    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        return ollama_client(self.base_url, timeout=timeout, **self._client_kwargs())

    async def discover_models(self) -> List[LocalModel]:
        try:
            async with self.client() as client:
                resp = await client.get("/api/tags")
                if not resp.is_success:
                    return []
                data = resp.json() or {}
        except (httpx.HTTPError, OSError, ValueError) as e:
            log.debug(f"Ollama model discovery failed: {e}")
            return []

        models = []
        for m in data.get("models") or []:
            if not isinstance(m, dict) or not m.get("name"):
                continue
            details = m.get("details") or {}
            models.append(LocalModel(
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
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[ChatChunk]:
        options = options or ChatOptions()
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
            "options": {
                k: v for k, v in (
                    ("temperature", options.temperature),
                    ("num_predict", options.max_tokens),
                ) if v is not None
            },
        }

        async with self.client() as client:
            async with client.stream("POST", "/api/chat", json=payload) as resp:
                if resp.status_code == 404:
                    raise ModelNotFoundError(model)
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(
                        f"Ollama request failed: {resp.status_code} {body}",
                        status_code=resp.status_code,
                    )

                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug(f"Skipping non-JSON line from Ollama: {line[:100]}")
                        continue

                    if chunk.get("error"):
                        raise ProviderError(f"Ollama error: {chunk['error']}")

                    content = (chunk.get("message") or {}).get("content") or ""
                    if chunk.get("done") is True:
                        yield ChatChunk(content=content, done=True)
                        return
                    if content:
                        yield ChatChunk(content=content)

        # Stream ended without a done marker
        yield ChatChunk(content="", done=True)
