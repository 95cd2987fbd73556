from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from ..errors import JobFailedError, UpstreamError
from ..http import request_json
from ..logging import get_logger
from .base import GenerationContext, GenerationProvider, GenerationRequest, GenerationResult

LOGGER = get_logger("providers.replicate")

DEFAULT_REPLICATE_BASE_URL = "https://api.replicate.com"
DEFAULT_ANIMATION_VERSION = "lucataco/animate-diff:beecf59c4aee8d81bf04f0381033dfa10dc16e845b4ae00d281e2fa377e48a9f"


class ReplicateClient:
    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_REPLICATE_BASE_URL,
        timeout_sec: float = 120.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._http_client = http_client

    def create_prediction(self, version: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        """POST a prediction and ask the server to hold the call until it finishes."""
        return request_json(
            method="POST",
            url=f"{self.base_url}/v1/predictions",
            json_body={"version": version, "input": model_input},
            headers={
                "Authorization": f"Token {self._api_token}",
                "Content-Type": "application/json",
                "Prefer": "wait",
            },
            timeout_sec=self.timeout_sec,
            provider="Replicate",
            client=self._http_client,
        )


def extract_prediction_output(payload: Dict[str, Any]) -> str:
    status = str(payload.get("status") or "").strip().lower()
    if status in ("failed", "canceled"):
        raise JobFailedError(status.upper(), str(payload.get("error") or "") or None)
    output = payload.get("video_url") or payload.get("output")
    if isinstance(output, (list, tuple)):
        output = output[0] if output else None
    if not output:
        raise UpstreamError(502, f"Prediction returned no output (status={status or 'unknown'})", provider="Replicate")
    return str(output)


class TextToVideoProvider(GenerationProvider):
    name = "replicate"
    capability = "text-to-video"
    credential_name = "REPLICATE_API_TOKEN"

    def __init__(
        self,
        *,
        version: str = DEFAULT_ANIMATION_VERSION,
        client_factory: Optional[Callable[[str], ReplicateClient]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(environ)
        self.version = version
        self._client_factory = client_factory or (lambda api_token: ReplicateClient(api_token))

    def generate(self, request: GenerationRequest, context: Optional[GenerationContext] = None) -> GenerationResult:
        context = context or GenerationContext()
        api_token = self.ensure_configured()
        if not request.prompt.strip():
            raise ValueError("Prompt must not be empty")
        client = self._client_factory(api_token)
        context.progress(0.1, "Waiting for the prediction")
        LOGGER.info("prediction request version=%s", self.version.split(":", 1)[0])
        payload = client.create_prediction(self.version, {"prompt": request.prompt})
        video_url = extract_prediction_output(payload)
        LOGGER.info("prediction finished id=%s", payload.get("id"))
        return GenerationResult(
            kind="video",
            url=video_url,
            media_type="video/mp4",
            provider=self.name,
            metadata={"prediction_id": payload.get("id"), "version": self.version},
        )
