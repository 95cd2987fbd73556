import time
from typing import Any, Dict, Optional

import httpx

from .errors import TransportError, UpstreamError
from .logging import get_logger

LOGGER = get_logger("http")


def response_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def request_json(
    *,
    method: str,
    url: str,
    json_body: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout_sec: float = 20.0,
    retry_count: int = 0,
    retry_backoff_sec: float = 1.0,
    provider: str = "",
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """Issue one JSON request and return the decoded object.

    Only transport failures are retried, and only when retry_count > 0.
    Callers pass retry_count for idempotent status reads; submissions keep the
    default so a create call is never sent twice.
    """
    timeout = httpx.Timeout(timeout_sec, connect=min(timeout_sec, 10.0))
    last_error: Optional[Exception] = None
    for attempt in range(retry_count + 1):
        try:
            if client is not None:
                response = client.request(method, url, json=json_body, headers=headers, timeout=timeout)
            else:
                with httpx.Client(timeout=timeout, follow_redirects=True) as owned:
                    response = owned.request(method, url, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            last_error = exc
            LOGGER.warning(
                "request transport error method=%s url=%s attempt=%d error=%s", method, url, attempt + 1, exc
            )
            if attempt >= retry_count:
                break
            time.sleep(max(0.1, retry_backoff_sec) * (2**attempt))
            continue
        if response.status_code >= 400:
            detail = response_detail(response)
            LOGGER.warning("request rejected method=%s url=%s status=%s", method, url, response.status_code)
            raise UpstreamError(response.status_code, detail, provider=provider)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(response.status_code, f"Invalid JSON response from {url}", provider=provider) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(response.status_code, f"Invalid JSON object response from {url}", provider=provider)
        return payload
    raise TransportError(str(last_error or "request failed"))
