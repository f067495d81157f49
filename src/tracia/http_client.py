from __future__ import annotations

from typing import Any

import httpx
import structlog

from ._version import __version__
from .errors import ApiError, NetworkError, RequestTimeoutError, TraciaErrorCode, api_error_code

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpClient:
    """JSON client for the Tracia REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = client is None
        self._timeout_seconds = timeout_seconds
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "User-Agent": f"tracia-sdk-python/{__version__}",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, path: str, *, params: dict[str, str] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any) -> Any:
        return await self.request("POST", path, json=body)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers,
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Request timed out after {self._timeout_seconds:g}s") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error: {e}") from e

        if resp.status_code >= 400:
            raise self._api_error(resp)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError(
                "Invalid JSON in response", code=TraciaErrorCode.UNKNOWN, status_code=resp.status_code
            ) from e

    @staticmethod
    def _api_error(resp: httpx.Response) -> ApiError:
        fallback = f"HTTP {resp.status_code}: {resp.reason_phrase}"
        try:
            data = resp.json()
        except ValueError:
            return ApiError(fallback, code=TraciaErrorCode.UNKNOWN, status_code=resp.status_code)

        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict) and err.get("message"):
            log.debug("tracia_api_error", status_code=resp.status_code, code=err.get("code"))
            return ApiError(str(err["message"]), code=api_error_code(err.get("code")), status_code=resp.status_code)
        return ApiError(fallback, code=TraciaErrorCode.UNKNOWN, status_code=resp.status_code)
