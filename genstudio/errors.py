from typing import Any, Optional


class GenerationError(RuntimeError):
    """Base class for failures that end a generation request."""

    status_code: int = 500

    def to_payload(self) -> dict[str, Any]:
        return {"error": str(self)}


class ConfigurationError(GenerationError):
    pass


class TransportError(GenerationError):
    status_code = 502


class UpstreamError(GenerationError):
    """Non-success response from an inference vendor."""

    def __init__(self, status_code: int, detail: Any, *, provider: str = "") -> None:
        self.status_code = int(status_code) if 400 <= int(status_code) <= 599 else 502
        self.upstream_status = int(status_code)
        self.detail = detail
        self.provider = provider
        prefix = f"{provider} request failed" if provider else "Upstream request failed"
        super().__init__(f"{prefix}: {status_code} - {detail}")

    def to_payload(self) -> dict[str, Any]:
        # Mirror the vendor's structured error body when it sent one.
        if isinstance(self.detail, (dict, list)):
            return {"error": self.detail}
        return {"error": str(self)}


class JobFailedError(GenerationError):
    def __init__(self, status: str, failure: Optional[str] = None) -> None:
        self.status = status
        self.failure = failure
        message = f"Task {status}"
        if failure:
            message = f"{message}: {failure}"
        super().__init__(message)


class JobTimeoutError(GenerationError):
    status_code = 504
