from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from api.services.config import Settings, get_settings
from api.services.errors import APIError, AuthenticationError, NotFoundError, RateLimitError, TransientAPIError

TRANSIENT_STATUS_CODES = {408, 425, 502, 503, 504}
TOKEN_EXPIRY_BUFFER = timedelta(seconds=60)


class HaloClient:
    """Async HTTP client for the HaloPSA REST API with client-credentials auth."""

    def __init__(self, settings: Optional[Settings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings or get_settings()
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.halo_timeout_seconds),
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def __aenter__(self) -> "HaloClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _token_valid(self) -> bool:
        if not self._access_token or not self._token_expires_at:
            return False
        return datetime.now(timezone.utc) < self._token_expires_at - TOKEN_EXPIRY_BUFFER

    async def authenticate(self) -> str:
        if self._token_valid():
            return self._access_token  # type: ignore[return-value]

        if not self.settings.halo_configured:
            raise AuthenticationError("HaloPSA connection is not configured")

        try:
            response = await self._http.post(
                self.settings.halo_auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.halo_client_id,
                    "client_secret": self.settings.halo_client_secret,
                    "scope": "all",
                },
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"Authentication failed: {exc}") from exc

        if response.status_code >= 400:
            raise AuthenticationError(f"Authentication failed: {response.text[:300]}")

        payload = response.json()
        self._access_token = payload["access_token"]
        self._token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload.get("expires_in") or 3600)
        return self._access_token

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, TransientAPIError)),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        token = await self.authenticate()
        url = self.settings.halo_api_url + endpoint
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        query = {key: _query_value(value) for key, value in (params or {}).items() if value is not None}

        response = await self._http.request(method, url, headers=headers, params=query, json=json)

        if response.status_code < 400:
            if not response.content:
                return None
            return response.json()

        detail = _error_detail(response)
        message = f"{method} {endpoint} failed: {detail}"
        if response.status_code == 401:
            self._access_token = None
            raise AuthenticationError(message)
        if response.status_code == 404:
            raise NotFoundError(endpoint)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(message, int(retry_after) if retry_after and retry_after.isdigit() else None)
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientAPIError(message, response.status_code, detail)
        raise APIError(message, response.status_code, detail)

    async def get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Any = None, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._request("POST", endpoint, params=params, json=data)

    async def delete(self, endpoint: str) -> Any:
        return await self._request("DELETE", endpoint)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict):
        for key in ("error", "message", "error_description", "ErrorMessage"):
            if payload.get(key):
                return str(payload[key])[:500]
    return response.text[:500]


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value
