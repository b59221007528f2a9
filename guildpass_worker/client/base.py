"""Base HTTP clients for the GuildPass API"""

from typing import Any

import httpx


class WorkerAPIError(Exception):
    """Raised for transport failures, non-2xx responses and unreadable bodies"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _error_message(data: Any, default: str) -> str:
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get("message") or default
    if isinstance(error, str) and error:
        return error
    return default


def unwrap_response(response: httpx.Response) -> Any:
    """Return the ``data`` of an envelope, or the bare body of webhook routes"""
    try:
        data = response.json()
    except ValueError:
        raise WorkerAPIError(
            f"Invalid JSON response: {response.status_code}",
            status_code=response.status_code,
        ) from None

    if response.status_code >= 400:
        error_msg = _error_message(data, "Unknown error")
        raise WorkerAPIError(
            f"API Error {response.status_code}: {error_msg}",
            status_code=response.status_code,
        )

    # Handle envelope format (with "ok" and "data" fields)
    if isinstance(data, dict) and "ok" in data and "data" in data:
        if not data.get("ok", False):
            raise WorkerAPIError(
                _error_message(data, "Request failed"),
                status_code=response.status_code,
            )
        return data["data"]

    return data


def _auth_headers(token: str | None, headers: dict[str, str] | None) -> dict[str, str]:
    merged = dict(headers or {})
    if token:
        merged.setdefault("Authorization", f"Bearer {token}")
    return merged


class APIClient:
    """Blocking client used by the operator CLI"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = _auth_headers(token, headers)
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=self.default_headers,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = self.client.request(
                method, f"/v1{path}", params=params, json=json, headers=headers
            )
        except httpx.RequestError as e:
            raise WorkerAPIError(f"Connection failed: {e}") from None
        return unwrap_response(response)

    def get(self, path: str, params: dict[str, Any] | None = None, **kwargs) -> Any:
        return self.request("GET", path, params=params, **kwargs)

    def post(self, path: str, json: Any = None, **kwargs) -> Any:
        return self.request("POST", path, json=json, **kwargs)


class AsyncAPIClient:
    """Non-blocking client used by the queue worker"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = _auth_headers(token, headers)
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=self.default_headers,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        try:
            response = await self.client.request(
                method, f"/v1{path}", params=params, json=json
            )
        except httpx.RequestError as e:
            raise WorkerAPIError(f"Connection failed: {e}") from None
        return unwrap_response(response)

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)
