"""
Provider registry.

Holds the configured providers and the model name -> provider map built by
the last discovery pass. The map is rebuilt from scratch on every refresh
and swapped in with a single assignment, so readers never see a partial map.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from shared.schemas import LocalModel, ProviderStatus, SyncModelEntry
from tunnel.backends.base import Provider
from tunnel.backends.comfyui_backend import ComfyUIProvider
from tunnel.backends.lmstudio_backend import LMStudioProvider
from tunnel.backends.ollama_backend import OllamaProvider
from tunnel.backends.sd_backend import StableDiffusionProvider
from tunnel.config import TunnelConfig
from tunnel.logging_utils import get_logger

log = logging.getLogger("mindstudio-tunnel.registry")


def build_providers(config: TunnelConfig) -> List[Provider]:
    probe = config.probe_timeout_s
    return [
        OllamaProvider(config.provider_url("ollama"), probe_timeout_s=probe),
        LMStudioProvider(config.provider_url("lmstudio"), probe_timeout_s=probe),
        StableDiffusionProvider(config.provider_url("stable-diffusion"), probe_timeout_s=probe),
        ComfyUIProvider(
            config.provider_url("comfyui"),
            install_path=config.install_path("comfyui"),
            workflow_timeout_s=config.workflow_timeout_s,
            probe_timeout_s=probe,
        ),
    ]


class ProviderRegistry:
    def __init__(self, providers: List[Provider], probe_timeout_s: float = 2.0):
        self.providers = list(providers)
        self.probe_timeout_s = probe_timeout_s
        self.logger = get_logger()
        self._by_model: Dict[str, Provider] = {}
        self._models: List[LocalModel] = []

    @classmethod
    def from_config(cls, config: TunnelConfig) -> "ProviderRegistry":
        return cls(build_providers(config), probe_timeout_s=config.probe_timeout_s)

    def get(self, name: str) -> Optional[Provider]:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    @property
    def models(self) -> List[LocalModel]:
        return list(self._models)

    @property
    def model_names(self) -> List[str]:
        return list(self._by_model)

    def find_by_model(self, model_id: str) -> Optional[Provider]:
        return self._by_model.get(model_id)

    async def _probe(self, provider: Provider) -> bool:
        try:
            return await asyncio.wait_for(provider.is_running(), timeout=self.probe_timeout_s)
        except asyncio.TimeoutError:
            log.debug(f"{provider.display_name} probe timed out after {self.probe_timeout_s}s")
            return False

    async def statuses(self) -> List[ProviderStatus]:
        results = await asyncio.gather(*(self._probe(p) for p in self.providers))
        return [
            ProviderStatus(name=p.name, display_name=p.display_name, running=running)
            for p, running in zip(self.providers, results)
        ]

    async def running_providers(self) -> List[Provider]:
        return [
            provider
            for provider, status in zip(self.providers, await self.statuses())
            if status.running
        ]

    async def any_running(self) -> bool:
        return any(status.running for status in await self.statuses())

    async def refresh(self) -> List[LocalModel]:
        """Rediscover models on every running provider and swap in the new map."""
        running = await self.running_providers()
        discovered: List[Tuple[Provider, List[LocalModel]]] = list(zip(
            running,
            await asyncio.gather(*(p.discover_models() for p in running)),
        ))

        by_model: Dict[str, Provider] = {}
        models: Dict[str, LocalModel] = {}
        for provider, provider_models in discovered:
            for model in provider_models:
                previous = by_model.get(model.name)
                if previous is not None and previous is not provider:
                    self.logger.warning(
                        "model_name_collision",
                        model=model.name,
                        kept=provider.name,
                        dropped=previous.name,
                    )
                by_model[model.name] = provider
                models[model.name] = model

        self._by_model = by_model
        self._models = list(models.values())
        self.logger.info(
            "models_discovered",
            count=len(self._models),
            providers=[p.name for p in running],
        )
        return self.models

    async def sync_entries(self) -> List[SyncModelEntry]:
        """Registration payload for the discovered models, with UI parameter schemas."""
        schemas: Dict[str, List[Dict]] = {}
        entries = []
        for model in self._models:
            entry = SyncModelEntry.from_local_model(model)
            if entry.parameters is None:
                provider = self._by_model[model.name]
                if provider.name not in schemas:
                    schemas[provider.name] = await provider.parameter_schemas()
                entry = entry.model_copy(update={"parameters": schemas[provider.name] or None})
            entries.append(entry)
        return entries
