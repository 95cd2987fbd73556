from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from ..errors import UpstreamError
from ..http import request_json
from ..logging import get_logger
from ..poller import JobSnapshot, parse_job_status, poll_job, resolve_job_output
from ..presets import video_ratio
from .base import (
    GenerationContext,
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
    validate_image_reference,
)

LOGGER = get_logger("providers.runway")

DEFAULT_RUNWAY_BASE_URL = "https://api.dev.runwayml.com"
DEFAULT_RUNWAY_API_VERSION = "2024-11-06"
DEFAULT_RUNWAY_MODEL = "gen3a_turbo"


class RunwayClient:
    """Create/retrieve calls of the Runway job API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_RUNWAY_BASE_URL,
        api_version: str = DEFAULT_RUNWAY_API_VERSION,
        timeout_sec: float = 30.0,
        status_retry_count: int = 0,
        retry_backoff_sec: float = 1.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout_sec = timeout_sec
        self.status_retry_count = status_retry_count
        self.retry_backoff_sec = retry_backoff_sec
        self._http_client = http_client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "X-Runway-Version": self.api_version,
            "Content-Type": "application/json",
        }

    def create_image_to_video(
        self,
        *,
        model: str,
        prompt_image: str,
        prompt_text: str = "",
        duration: int = 5,
        ratio: str = "1280:768",
    ) -> str:
        body: Dict[str, Any] = {
            "model": model,
            "promptImage": prompt_image,
            "promptText": prompt_text or "",
            "duration": int(duration),
            "ratio": ratio,
        }
        payload = request_json(
            method="POST",
            url=f"{self.base_url}/v1/image_to_video",
            json_body=body,
            headers=self._headers(),
            timeout_sec=self.timeout_sec,
            provider="Runway",
            client=self._http_client,
        )
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            raise UpstreamError(502, "Runway did not return a task id", provider="Runway")
        return task_id

    def retrieve_task(self, task_id: str) -> JobSnapshot:
        payload = request_json(
            method="GET",
            url=f"{self.base_url}/v1/tasks/{task_id}",
            headers=self._headers(),
            timeout_sec=self.timeout_sec,
            retry_count=self.status_retry_count,
            retry_backoff_sec=self.retry_backoff_sec,
            provider="Runway",
            client=self._http_client,
        )
        progress = payload.get("progress")
        return JobSnapshot(
            id=str(payload.get("id") or task_id),
            status=parse_job_status(payload.get("status")),
            output=payload.get("output"),
            failure=payload.get("failure") or None,
            progress=float(progress) if isinstance(progress, (int, float)) else None,
        )


class ImageToVideoProvider(GenerationProvider):
    """Submit one image-to-video job and poll it to a terminal state."""

    name = "runway"
    capability = "image-to-video"
    credential_name = "RUNWAY_API_KEY"

    def __init__(
        self,
        *,
        model: str = DEFAULT_RUNWAY_MODEL,
        poll_interval_sec: float = 10.0,
        poll_max_attempts: Optional[int] = 60,
        client_factory: Optional[Callable[[str], RunwayClient]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(environ)
        self.model = model
        self.poll_interval_sec = poll_interval_sec
        self.poll_max_attempts = poll_max_attempts
        self._client_factory = client_factory or (lambda api_key: RunwayClient(api_key))

    def generate(self, request: GenerationRequest, context: Optional[GenerationContext] = None) -> GenerationResult:
        context = context or GenerationContext()
        api_key = self.ensure_configured()
        image_url = validate_image_reference(request.image_url)
        duration = int(request.parameters.get("duration") or 5)
        ratio = video_ratio(str(request.parameters.get("orientation") or "landscape"))
        client = self._client_factory(api_key)

        context.progress(0.05, "Submitting job")
        job_id = client.create_image_to_video(
            model=self.model,
            prompt_image=image_url,
            prompt_text=request.prompt or "",
            duration=duration,
            ratio=ratio,
        )
        LOGGER.info("image-to-video submitted id=%s model=%s duration=%s ratio=%s", job_id, self.model, duration, ratio)
        context.job(JobSnapshot(id=job_id, status=parse_job_status("PENDING")))

        reported = {"progress": 0.1}

        def on_status(snapshot: JobSnapshot, attempt: int) -> None:
            context.job(snapshot)
            # Vendors only send progress while RUNNING; keep the bar from moving backwards.
            if snapshot.progress is not None:
                reported["progress"] = max(reported["progress"], 0.1 + 0.8 * max(0.0, min(1.0, snapshot.progress)))
            context.progress(reported["progress"], f"Job {snapshot.status_name} (check {attempt})")

        snapshot = poll_job(
            client.retrieve_task,
            job_id,
            interval_sec=self.poll_interval_sec,
            max_attempts=self.poll_max_attempts,
            cancel_event=context.cancel_event,
            on_status=on_status,
        )
        video_url = resolve_job_output(snapshot)
        LOGGER.info("image-to-video finished id=%s status=%s", job_id, snapshot.status_name)
        return GenerationResult(
            kind="video",
            url=video_url,
            media_type="video/mp4",
            provider=self.name,
            metadata={"job_id": job_id, "model": self.model, "duration": duration, "ratio": ratio},
        )
