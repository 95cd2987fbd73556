from __future__ import annotations

import io
from typing import Any, Callable, Mapping, Optional

import httpx
from huggingface_hub import InferenceClient
from huggingface_hub.errors import HfHubHTTPError

from ..errors import TransportError, UpstreamError
from ..history import encode_data_url
from ..logging import get_logger
from ..presets import build_text_to_image_payload, resolve_model_repo
from .base import GenerationContext, GenerationProvider, GenerationRequest, GenerationResult

LOGGER = get_logger("providers.huggingface")

DEFAULT_TEXT_TO_IMAGE_MODEL = "stabilityai/stable-diffusion-3.5-large"


def image_to_png_bytes(image: Any) -> bytes:
    if isinstance(image, (bytes, bytearray)):
        return bytes(image)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _http_error_detail(exc: HfHubHTTPError) -> tuple[int, str]:
    response = getattr(exc, "response", None)
    status_code = int(getattr(response, "status_code", 0) or 502)
    detail = ""
    if response is not None:
        try:
            detail = response.text
        except Exception:
            detail = ""
    return status_code, detail or str(exc)


class TextToImageProvider(GenerationProvider):
    """Single synchronous call to the Hugging Face Inference API.

    The server holds the call until the model has produced the image, so there
    is no job to poll. The image comes back decoded and is re-encoded as a PNG
    data URL so it can be stored in history as-is.
    """

    name = "huggingface"
    capability = "text-to-image"
    credential_name = "HF_API_KEY"

    def __init__(
        self,
        *,
        default_model: str = DEFAULT_TEXT_TO_IMAGE_MODEL,
        timeout_sec: float = 120.0,
        client_factory: Callable[..., Any] = InferenceClient,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(environ)
        self.default_model = default_model
        self.timeout_sec = timeout_sec
        self._client_factory = client_factory

    def generate(self, request: GenerationRequest, context: Optional[GenerationContext] = None) -> GenerationResult:
        context = context or GenerationContext()
        token = self.ensure_configured()
        if not request.prompt.strip():
            raise ValueError("Prompt must not be empty")
        payload = build_text_to_image_payload(request.prompt, dict(request.parameters))
        model = resolve_model_repo(request.parameters.get("model"), self.default_model)
        LOGGER.info(
            "text-to-image request model=%s width=%s height=%s steps=%s",
            model,
            payload["parameters"]["width"],
            payload["parameters"]["height"],
            payload["parameters"]["num_inference_steps"],
        )
        context.progress(0.1, "Waiting for the model")
        client = self._client_factory(model=model, token=token, timeout=self.timeout_sec)
        try:
            image = client.text_to_image(payload["inputs"], **payload["parameters"])
        except HfHubHTTPError as exc:
            status_code, detail = _http_error_detail(exc)
            LOGGER.warning("text-to-image rejected model=%s status=%s", model, status_code)
            raise UpstreamError(status_code, detail, provider="Hugging Face") from exc
        except (httpx.HTTPError, OSError) as exc:
            LOGGER.warning("text-to-image transport error model=%s error=%s", model, exc)
            raise TransportError(str(exc)) from exc
        context.progress(0.9, "Encoding image")
        data = image_to_png_bytes(image)
        return GenerationResult(
            kind="image",
            url=encode_data_url(data, "image/png"),
            media_type="image/png",
            provider=self.name,
            metadata={"model": model, "prompt": payload["inputs"], "parameters": payload["parameters"]},
        )
