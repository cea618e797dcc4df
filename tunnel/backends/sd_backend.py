from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.schemas import GenerationProgress, ImageResult, LocalModel
from tunnel.backends.base import ImageOptions, ImageProvider, ProgressCallback, emit_progress
from tunnel.errors import ProviderError
from tunnel.http_client import LoggedHTTPClient, sd_client

log = logging.getLogger("mindstudio-tunnel.stable_diffusion")

DEFAULT_SAMPLERS = [
    "Euler a",
    "Euler",
    "LMS",
    "Heun",
    "DPM2",
    "DPM2 a",
    "DPM++ 2S a",
    "DPM++ 2M",
    "DPM++ SDE",
    "DPM fast",
    "DPM adaptive",
    "LMS Karras",
    "DPM2 Karras",
    "DPM2 a Karras",
    "DPM++ 2S a Karras",
    "DPM++ 2M Karras",
    "DPM++ SDE Karras",
    "DDIM",
    "PLMS",
    "UniPC",
]


def parse_seed(info: Any) -> Optional[int]:
    """The txt2img response carries generation info as a JSON-encoded string."""
    if not isinstance(info, str):
        return None
    try:
        parsed = json.loads(info)
    except json.JSONDecodeError:
        return None
    seed = parsed.get("seed") if isinstance(parsed, dict) else None
    if isinstance(seed, bool) or not isinstance(seed, int):
        return None
    return seed


def dimension_options() -> List[Dict[str, str]]:
    return [{"label": f"{size}px", "value": str(size)} for size in range(256, 2049, 64)]


class StableDiffusionProvider(ImageProvider):
    name = "stable-diffusion"
    display_name = "Stable Diffusion WebUI"
    health_path = "/sdapi/v1/sd-models"

    # Seconds between /sdapi/v1/progress polls while txt2img runs
    progress_poll_interval_s = 0.5

    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        return sd_client(self.base_url, timeout=timeout, **self._client_kwargs())

    async def discover_models(self) -> List[LocalModel]:
        try:
            async with self.client() as client:
                resp = await client.get("/sdapi/v1/sd-models")
                if not resp.is_success:
                    return []
                data = resp.json() or []
        except (httpx.HTTPError, OSError, ValueError) as e:
            log.debug(f"Stable Diffusion model discovery failed: {e}")
            return []

        return [
            LocalModel(name=m["model_name"], provider=self.name, capability="image")
            for m in data
            if isinstance(m, dict) and m.get("model_name")
        ]

    async def _current_model(self, client: LoggedHTTPClient) -> Optional[str]:
        try:
            resp = await client.get("/sdapi/v1/options")
            if not resp.is_success:
                return None
            return (resp.json() or {}).get("sd_model_checkpoint") or None
        except (httpx.HTTPError, ValueError):
            return None

    async def _set_model(self, client: LoggedHTTPClient, model: str) -> None:
        resp = await client.post("/sdapi/v1/options", json={"sd_model_checkpoint": model})
        if not resp.is_success:
            raise ProviderError(f"Failed to switch model: {resp.text}", status_code=resp.status_code)

    async def _poll_progress(self, client: LoggedHTTPClient, on_progress: ProgressCallback) -> None:
        while True:
            try:
                resp = await client.get("/sdapi/v1/progress")
                if not resp.is_success:
                    return
                data = resp.json() or {}
            except (httpx.HTTPError, ValueError) as e:
                log.debug(f"Progress poll stopped: {e}")
                return

            state = data.get("state") or {}
            await emit_progress(on_progress, GenerationProgress(
                step=int(state.get("sampling_step") or 0),
                total_steps=int(state.get("sampling_steps") or 0),
                preview=data.get("current_image"),
            ))
            if (data.get("progress") or 0) >= 1.0:
                return
            await asyncio.sleep(self.progress_poll_interval_s)

    async def generate_image(
        self,
        model: str,
        prompt: str,
        options: Optional[ImageOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImageResult:
        options = options or ImageOptions()
        payload = {
            "prompt": prompt,
            "negative_prompt": options.negative_prompt or "",
            "steps": options.steps or 20,
            "width": options.width or 512,
            "height": options.height or 512,
            "cfg_scale": options.cfg_scale or 7,
            "seed": options.seed if options.seed is not None else -1,
            "sampler_name": options.sampler or "Euler a",
        }

        async with self.client() as client:
            current = await self._current_model(client)
            if current and model not in current:
                log.info(f"Switching Stable Diffusion checkpoint: {current} -> {model}")
                await self._set_model(client, model)

            poller: Optional[asyncio.Task] = None
            if on_progress is not None:
                poller = asyncio.create_task(self._poll_progress(client, on_progress))
            try:
                resp = await client.post("/sdapi/v1/txt2img", json=payload)
            finally:
                if poller is not None and not poller.done():
                    poller.cancel()
                    try:
                        await poller
                    except asyncio.CancelledError:
                        pass

        if not resp.is_success:
            raise ProviderError(
                f"Image generation failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )
        result = resp.json() or {}
        images = result.get("images") or []
        if not images:
            raise ProviderError("No images returned from Stable Diffusion")

        return ImageResult(
            image_bytes=base64.b64decode(images[0]),
            mime_type="image/png",
            seed=parse_seed(result.get("info")),
        )

    async def _samplers(self) -> List[str]:
        try:
            async with self.client() as client:
                resp = await client.get("/sdapi/v1/samplers")
                if not resp.is_success:
                    return list(DEFAULT_SAMPLERS)
                return [s["name"] for s in resp.json() or []]
        except (httpx.HTTPError, OSError, ValueError, KeyError):
            return list(DEFAULT_SAMPLERS)

    async def parameter_schemas(self) -> List[Dict[str, Any]]:
        samplers = await self._samplers()
        dimensions = dimension_options()
        return [
            {
                "type": "select",
                "label": "Sampler",
                "variable": "sampler",
                "helpText": "The sampling method used for image generation",
                "defaultValue": "Euler a",
                "selectOptions": [{"label": name, "value": name} for name in samplers],
            },
            {
                "type": "select",
                "label": "Width",
                "variable": "width",
                "defaultValue": "512",
                "selectOptions": dimensions,
            },
            {
                "type": "select",
                "label": "Height",
                "variable": "height",
                "defaultValue": "512",
                "selectOptions": dimensions,
            },
            {
                "type": "number",
                "label": "Steps",
                "variable": "steps",
                "helpText": "Number of denoising steps. More steps = higher quality but slower.",
                "defaultValue": "20",
                "numberOptions": {"min": 1, "max": 150, "step": 1},
            },
            {
                "type": "number",
                "label": "CFG Scale",
                "variable": "cfgScale",
                "helpText": "How strongly the image should follow the prompt. Higher = more literal.",
                "defaultValue": "7",
                "numberOptions": {"min": 1, "max": 30, "step": 0.5},
            },
            {
                "type": "seed",
                "label": "Seed",
                "variable": "seed",
                "helpText": "A specific value used to guide the 'randomness' of generation. Use -1 for random.",
                "defaultValue": "-1",
            },
            {
                "type": "text",
                "label": "Negative Prompt",
                "variable": "negativePrompt",
                "helpText": "Things you don't want in the image",
                "placeholder": "blurry, low quality, distorted",
            },
        ]
