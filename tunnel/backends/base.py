"""
Provider adapter contract.

A provider wraps one local inference server. Capability-specific base
classes declare the generation call each capability needs; the ComfyUI
adapter implements both the image and the video contract.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional

import httpx

from shared.schemas import (
    Capability,
    ChatChunk,
    ChatMessage,
    GenerationProgress,
    ImageResult,
    LocalModel,
    VideoResult,
)
from tunnel.http_client import LoggedHTTPClient

log = logging.getLogger("mindstudio-tunnel.backends")

ProgressCallback = Callable[[GenerationProgress], Awaitable[None]]


@dataclass
class ChatOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class ImageOptions:
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    sampler: Optional[str] = None
    workflow: Optional[Any] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ImageOptions":
        return cls(
            negative_prompt=config.get("negativePrompt"),
            width=_int_or_none(config.get("width")),
            height=_int_or_none(config.get("height")),
            steps=_int_or_none(config.get("steps")),
            cfg_scale=_float_or_none(config.get("cfgScale")),
            seed=_int_or_none(config.get("seed")),
            sampler=config.get("sampler"),
            workflow=config.get("workflow"),
        )


@dataclass
class VideoOptions(ImageOptions):
    num_frames: Optional[int] = None
    fps: Optional[float] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "VideoOptions":
        base = ImageOptions.from_config(config)
        return cls(
            **base.__dict__,
            num_frames=_int_or_none(config.get("numFrames")),
            fps=_float_or_none(config.get("fps")),
        )


class Provider(ABC):
    name: str = ""
    display_name: str = ""
    capabilities: FrozenSet[Capability] = frozenset()
    # Path probed by is_running(); relative to base_url
    health_path: str = "/"

    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_timeout_s: float = 2.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.probe_timeout_s = probe_timeout_s
        self._transport = transport

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"

    def supports(self, capability: Optional[str]) -> bool:
        return capability in self.capabilities

    def _client_kwargs(self) -> Dict[str, Any]:
        return {"transport": self._transport} if self._transport is not None else {}

    @abstractmethod
    def client(self, timeout: Optional[httpx.Timeout] = None) -> LoggedHTTPClient:
        """Create a logged HTTP client rooted at this provider's base URL."""

    async def is_running(self) -> bool:
        try:
            async with self.client(timeout=httpx.Timeout(self.probe_timeout_s)) as client:
                resp = await client.get(self.health_path)
                return resp.is_success
        except httpx.HTTPError:
            return False
        except OSError:
            return False

    @abstractmethod
    async def discover_models(self) -> List[LocalModel]:
        """List the models this server can serve; [] when it is unreachable."""

    async def parameter_schemas(self) -> List[Dict[str, Any]]:
        return []


class TextProvider(Provider):
    capabilities: FrozenSet[Capability] = frozenset({"text"})

    @abstractmethod
    def chat(
        self,
        model: str,
        messages: List[ChatMessage],
        options: Optional[ChatOptions] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream a chat completion. The last chunk always has done=True."""


class ImageProvider(Provider):
    capabilities: FrozenSet[Capability] = frozenset({"image"})

    @abstractmethod
    async def generate_image(
        self,
        model: str,
        prompt: str,
        options: Optional[ImageOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ImageResult:
        ...


class VideoProvider(Provider):
    capabilities: FrozenSet[Capability] = frozenset({"video"})

    @abstractmethod
    async def generate_video(
        self,
        model: str,
        prompt: str,
        options: Optional[VideoOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VideoResult:
        ...


async def emit_progress(on_progress: Optional[ProgressCallback], progress: GenerationProgress) -> None:
    """Invoke a progress callback, logging rather than propagating its failures."""
    if on_progress is None:
        return
    try:
        await on_progress(progress)
    except Exception as e:
        log.warning(f"Progress callback error: {e}")
