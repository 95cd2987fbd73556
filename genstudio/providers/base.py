from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Literal, Mapping, Optional
from urllib.parse import urlparse

from ..config import resolve_credential
from ..errors import ConfigurationError
from ..poller import JobSnapshot

Capability = Literal["text-to-image", "image-to-video", "text-to-video"]
ResultKind = Literal["image", "video"]


@dataclass(frozen=True)
class GenerationRequest:
    """One submission from the settings surface. Never mutated after creation."""

    prompt: str = ""
    image_url: Optional[str] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))


@dataclass(frozen=True)
class GenerationResult:
    kind: ResultKind
    url: str
    media_type: str
    provider: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "url": self.url,
            "media_type": self.media_type,
            "provider": self.provider,
            "metadata": dict(self.metadata),
        }


@dataclass
class GenerationContext:
    """Hooks a caller passes into a running generation."""

    cancel_event: Optional[threading.Event] = None
    on_progress: Optional[Callable[[float, str], None]] = None
    on_job: Optional[Callable[[JobSnapshot], None]] = None

    def progress(self, value: float, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(value, message)

    def job(self, snapshot: JobSnapshot) -> None:
        if self.on_job is not None:
            self.on_job(snapshot)


def validate_image_reference(image_url: Optional[str]) -> str:
    """Accept http(s) URLs and data URIs; anything else is rejected before submission."""
    candidate = str(image_url or "").strip()
    if not candidate:
        raise ValueError("A source image is required")
    if candidate.startswith("data:"):
        if ";base64," not in candidate:
            raise ValueError("Source image data URI must be base64 encoded")
        return candidate
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Source image must be an http(s) URL or a data URI: {candidate[:80]}")
    return candidate


class GenerationProvider(ABC):
    name: str = ""
    capability: Capability
    credential_name: str = ""

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ

    def ensure_configured(self) -> str:
        return resolve_credential(self.credential_name, self._environ)

    def is_configured(self) -> bool:
        try:
            self.ensure_configured()
        except ConfigurationError:
            return False
        return True

    @abstractmethod
    def generate(self, request: GenerationRequest, context: Optional[GenerationContext] = None) -> GenerationResult:
        raise NotImplementedError
