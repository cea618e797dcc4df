from __future__ import annotations

import json
import logging
from typing import Any, Dict, FrozenSet, List, Optional

import httpx

from shared.schemas import Capability, ImageResult, LocalModel, VideoResult
from tunnel.backends.base import ImageOptions, ImageProvider, ProgressCallback, VideoOptions, VideoProvider
from tunnel.backends.comfy_discovery import discover_video_checkpoints, discover_workflows, is_api_format
from tunnel.backends.comfy_workflows import VideoParams, resolve_seed, template_for_model
from tunnel.comfy_ws import DEFAULT_WORKFLOW_TIMEOUT_S, WorkflowOutput, execute_workflow
from tunnel.errors import ProviderError
from tunnel.http_client import LoggedHTTPClient, comfyui_client

log = logging.getLogger("mindstudio-tunnel.comfyui")


def coerce_workflow(value: Any) -> Dict[str, Any]:
    """
    Accept the ``workflow`` config value in the shapes the control plane sends:
    the graph itself, a {name, workflow} entry, or either one JSON-encoded.
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Workflow is not valid JSON: {e}") from e
    if isinstance(value, dict) and "workflow" in value and not is_api_format(value):
        value = value["workflow"]
    if not is_api_format(value):
        raise ProviderError("Workflow must be a ComfyUI API-format graph")
    return value


class ComfyUIProvider(ImageProvider, VideoProvider):
    name = "comfyui"
    display_name = "ComfyUI"
    capabilities: FrozenSet[Capability] = frozenset({"image", "video"})
    health_path = "/system_stats"

    def __init__(
        self,
        base_url: str,
        install_path: Optional[str] = None,
        workflow_timeout_s: float = DEFAULT_WORKFLOW_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_timeout_s: float = 2.0,
    ):
        super().__init__(base_url, transport=transport, probe_timeout_s=probe_timeout_s)
        self.install_path = install_path
        self.workflow_timeout_s = workflow_timeout_s

    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        return comfyui_client(self.base_url, timeout=timeout, **self._client_kwargs())

    async def discover_models(self) -> List[LocalModel]:
        try:
            async with self.client() as client:
                models = await discover_video_checkpoints(client, self.install_path)
                models.extend(await discover_workflows(client, self.install_path))
        except (httpx.HTTPError, OSError) as e:
            log.debug(f"ComfyUI discovery failed: {e}")
            return []
        return models

    async def _run(self, workflow: Dict[str, Any], on_progress: Optional[ProgressCallback]) -> WorkflowOutput:
        async with self.client() as client:
            return await execute_workflow(
                client,
                self.base_url,
                workflow,
                on_progress=on_progress,
                timeout_s=self.workflow_timeout_s,
            )

    async def generate_image(
        self,
        model: str,
        prompt: str,
        options: Optional[ImageOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImageResult:
        options = options or ImageOptions()
        if options.workflow is None:
            raise ProviderError(f"No workflow selected for {model}. Choose a saved ComfyUI workflow.")
        output = await self._run(coerce_workflow(options.workflow), on_progress)
        return ImageResult(image_bytes=output.data, mime_type=output.mime_type, seed=options.seed)

    async def generate_video(
        self,
        model: str,
        prompt: str,
        options: Optional[VideoOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VideoResult:
        options = options or VideoOptions()

        if options.workflow is not None:
            output = await self._run(coerce_workflow(options.workflow), on_progress)
            duration = None
            if options.num_frames and options.fps:
                duration = options.num_frames / options.fps
            return VideoResult(
                video_bytes=output.data,
                mime_type=output.mime_type,
                duration_seconds=duration,
                fps=options.fps,
                seed=options.seed,
            )

        template = template_for_model(model)
        if template is None:
            raise ProviderError(
                f"No workflow template found for model: {model}. Supported families: LTX-Video, Wan2.1"
            )
        d = template.defaults
        params = VideoParams(
            model=model,
            prompt=prompt,
            negative_prompt=options.negative_prompt or d.negative_prompt,
            width=options.width or d.width,
            height=options.height or d.height,
            num_frames=options.num_frames or d.num_frames,
            fps=options.fps or d.fps,
            steps=options.steps or d.steps,
            cfg_scale=options.cfg_scale or d.cfg_scale,
            seed=resolve_seed(options.seed),
        )
        log.info(f"Running {template.display_name} template for {model} (seed={params.seed})")
        output = await self._run(template.build(params), on_progress)
        return VideoResult(
            video_bytes=output.data,
            mime_type=output.mime_type,
            duration_seconds=params.num_frames / params.fps,
            fps=params.fps,
            seed=params.seed,
        )

    async def parameter_schemas(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "number",
                "label": "Width",
                "variable": "width",
                "helpText": "Video width in pixels. Larger = better quality but bigger file.",
                "defaultValue": 512,
                "numberOptions": {"min": 256, "max": 1280, "step": 64},
            },
            {
                "type": "number",
                "label": "Height",
                "variable": "height",
                "helpText": "Video height in pixels. Larger = better quality but bigger file.",
                "defaultValue": 320,
                "numberOptions": {"min": 256, "max": 1280, "step": 64},
            },
            {
                "type": "number",
                "label": "Frames",
                "variable": "numFrames",
                "helpText": "Number of frames to generate. More frames = longer video but bigger file.",
                "defaultValue": 41,
                "numberOptions": {"min": 9, "max": 97, "step": 8},
            },
            {
                "type": "number",
                "label": "FPS",
                "variable": "fps",
                "helpText": "Frames per second for the output video.",
                "defaultValue": 8,
                "numberOptions": {"min": 4, "max": 30, "step": 1},
            },
            {
                "type": "number",
                "label": "Steps",
                "variable": "steps",
                "helpText": "Number of denoising steps. More steps = higher quality but slower.",
                "defaultValue": 20,
                "numberOptions": {"min": 10, "max": 100, "step": 1},
            },
            {
                "type": "number",
                "label": "CFG Scale",
                "variable": "cfgScale",
                "helpText": "How strongly the video should follow the prompt. Higher = more literal.",
                "defaultValue": 7,
                "numberOptions": {"min": 1, "max": 20, "step": 0.5},
            },
            {
                "type": "number",
                "label": "Seed",
                "variable": "seed",
                "helpText": "A specific value used to guide randomness. Use -1 for random.",
                "defaultValue": -1,
                "numberOptions": {"min": -1, "max": 2147483647},
            },
            {
                "type": "text",
                "label": "Negative Prompt",
                "variable": "negativePrompt",
                "helpText": "Things you don't want in the video",
                "placeholder": "worst quality, blurry, distorted",
            },
        ]
