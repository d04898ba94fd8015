from __future__ import annotations

from typing import Any, Optional

import httpx


class HaloError(RuntimeError):
    """Base error for calls against the PSA API."""


class AuthenticationError(HaloError):
    pass


class APIError(HaloError):
    def __init__(self, message: str, status_code: Optional[int] = None, response: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class TransientAPIError(APIError):
    """Retryable upstream failure (gateway errors, throttling)."""


class RateLimitError(TransientAPIError):
    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NotFoundError(APIError):
    def __init__(self, resource: str, identifier: Any = None) -> None:
        suffix = f" with ID {identifier}" if identifier is not None else ""
        super().__init__(f"{resource}{suffix} not found", status_code=404)
        self.resource = resource
        self.identifier = identifier


class DashboardBuildError(RuntimeError):
    """Build-level failure that aborts a whole dashboard build."""


class LayoutNotFoundError(DashboardBuildError):
    def __init__(self, layout: str, available: list[str]) -> None:
        super().__init__(f"Unknown layout: {layout}")
        self.layout = layout
        self.available = available


class TemplateNotFoundError(DashboardBuildError):
    def __init__(self, names: list[str], available: list[str]) -> None:
        super().__init__(f"Unknown widget templates: {', '.join(names) or '(none given)'}")
        self.names = names
        self.available = available


class DashboardCreationError(DashboardBuildError):
    pass


def describe_error(exc: BaseException) -> str:
    """Map an exception onto a stable, user-facing message category."""
    if isinstance(exc, AuthenticationError):
        return "Authentication failed with HaloPSA. Please check your connection credentials."
    if isinstance(exc, RateLimitError):
        return "HaloPSA rate limit reached. Please wait a moment and try again."
    if isinstance(exc, NotFoundError):
        return "The requested resource was not found in HaloPSA."
    if isinstance(exc, APIError):
        if exc.status_code == 401:
            return "Authentication failed with HaloPSA. Please check your connection credentials."
        if exc.status_code == 403:
            return "Access denied. Your HaloPSA account may not have permission for this operation."
    if isinstance(exc, httpx.TimeoutException):
        return "The request to HaloPSA timed out. Please try again."
    if isinstance(exc, httpx.TransportError):
        return "Could not connect to HaloPSA. Please check the instance URL and network access."
    if isinstance(exc, DashboardBuildError):
        return str(exc)
    return f"Operation failed: {exc}"
