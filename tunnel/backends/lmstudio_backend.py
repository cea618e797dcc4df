from __future__ import annotations

import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from shared.schemas import ChatChunk, ChatMessage, LocalModel
from tunnel.backends.base import ChatOptions, TextProvider
from tunnel.errors import ModelNotFoundError, ProviderError
from tunnel.http_client import LoggedHTTPClient, lmstudio_client

log = logging.getLogger("mindstudio-tunnel.lmstudio")

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def parse_sse_delta(line: str) -> Optional[str]:
    """
    Extract the content delta from one SSE line of an OpenAI-style stream.

    Returns None for lines that carry no data, SSE_DONE for the terminator,
    and the (possibly empty) delta text otherwise.
    """
    trimmed = line.strip()
    if not trimmed.startswith(SSE_DATA_PREFIX):
        return None
    data = trimmed[len(SSE_DATA_PREFIX):]
    if data == SSE_DONE:
        return SSE_DONE
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    choices = parsed.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""


class LMStudioProvider(TextProvider):
    name = "lmstudio"
    display_name = "LM Studio"
    health_path = "/models"

    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        return lmstudio_client(self.base_url, timeout=timeout, **self._client_kwargs())

    async def discover_models(self) -> List[LocalModel]:
        try:
            async with self.client() as client:
                resp = await client.get("/models")
                if not resp.is_success:
                    return []
                data = resp.json() or {}
        except (httpx.HTTPError, OSError, ValueError) as e:
            log.debug(f"LM Studio model discovery failed: {e}")
            return []

        return [
            LocalModel(name=m["id"], provider=self.name, capability="text")
            for m in data.get("data") or []
            if isinstance(m, dict) and m.get("id")
        ]

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
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens

        async with self.client() as client:
            async with client.stream("POST", "/chat/completions", json=payload) as resp:
                if resp.status_code == 404:
                    raise ModelNotFoundError(model)
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(
                        f"LM Studio request failed: {resp.status_code} {body}",
                        status_code=resp.status_code,
                    )

                async for line in resp.aiter_lines():
                    delta = parse_sse_delta(line)
                    if delta is None:
                        continue
                    if delta == SSE_DONE:
                        break
                    if delta:
                        yield ChatChunk(content=delta)

        yield ChatChunk(content="", done=True)
