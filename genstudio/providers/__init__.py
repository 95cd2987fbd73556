"""Hosted inference providers.

Every generation mode is served by one provider object behind the same
``GenerationProvider.generate`` call, so callers pick a capability and never
deal with vendor request shapes or credential schemes.
"""

from typing import Any, Dict, Mapping, Optional

from .base import (
    Capability,
    GenerationContext,
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
    validate_image_reference,
)
from .huggingface import TextToImageProvider
from .replicate import ReplicateClient, TextToVideoProvider
from .runway import ImageToVideoProvider, RunwayClient


class ProviderRegistry:
    def __init__(self, providers: Optional[Dict[str, GenerationProvider]] = None) -> None:
        self._providers: Dict[str, GenerationProvider] = dict(providers or {})

    def register(self, provider: GenerationProvider) -> None:
        self._providers[provider.capability] = provider

    def get(self, capability: str) -> GenerationProvider:
        provider = self._providers.get(capability)
        if provider is None:
            raise KeyError(f"No provider registered for {capability}")
        return provider

    def describe(self) -> list[Dict[str, Any]]:
        return [
            {
                "capability": capability,
                "provider": provider.name,
                "credential": provider.credential_name,
                "configured": provider.is_configured(),
            }
            for capability, provider in sorted(self._providers.items())
        ]


def build_providers(settings: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> ProviderRegistry:
    server = settings["server"]
    vendors = settings["providers"]
    timeout_sec = float(server["request_timeout_sec"])

    def runway_client(api_key: str) -> RunwayClient:
        return RunwayClient(
            api_key,
            base_url=vendors["runway_base_url"],
            api_version=vendors["runway_api_version"],
            timeout_sec=timeout_sec,
            status_retry_count=int(server["poll_retry_count"]),
            retry_backoff_sec=float(server["request_retry_backoff_sec"]),
        )

    def replicate_client(api_token: str) -> ReplicateClient:
        return ReplicateClient(api_token, base_url=vendors["replicate_base_url"], timeout_sec=timeout_sec)

    registry = ProviderRegistry()
    registry.register(
        TextToImageProvider(default_model=vendors["huggingface_model"], timeout_sec=timeout_sec, environ=environ)
    )
    registry.register(
        ImageToVideoProvider(
            model=vendors["runway_model"],
            poll_interval_sec=float(server["poll_interval_sec"]),
            poll_max_attempts=int(server["poll_max_attempts"]),
            client_factory=runway_client,
            environ=environ,
        )
    )
    registry.register(
        TextToVideoProvider(version=vendors["replicate_version"], client_factory=replicate_client, environ=environ)
    )
    return registry


__all__ = [
    "Capability",
    "GenerationContext",
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "ImageToVideoProvider",
    "ProviderRegistry",
    "ReplicateClient",
    "RunwayClient",
    "TextToImageProvider",
    "TextToVideoProvider",
    "build_providers",
    "validate_image_reference",
]
