from __future__ import annotations
from typing import Any, Dict, Optional

import httpx

from ..errors import KoeponError, NetworkError, error_from_response
from ..logger import get_logger

log = get_logger(__name__)


class ApiClient:
    """Thin JSON client for the Koepon API.

    Error responses are mapped back onto the `koepon.errors` taxonomy and
    transport failures onto NetworkError, so the stores only ever see
    KoeponError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        h = {"accept": "application/json"}
        if self.token:
            h["authorization"] = f"Bearer {self.token}"
        return h

    async def request(self, method: str, path: str, *,
                      params: Optional[Dict[str, Any]] = None,
                      json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items()
                      if v is not None and v != ""}
        try:
            resp = await self.http.request(
                method, url, params=params or None, json=json,
                headers=self._headers(),
            )
        except httpx.RequestError as e:
            log.warning("request failed: %s %s: %s", method, path, e)
            raise NetworkError() from e

        try:
            body = resp.json() if resp.content else None
        except ValueError:
            body = None
        if resp.status_code >= 400:
            raise error_from_response(resp.status_code, body)
        if body is None:
            raise KoeponError("empty response")
        return body

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str,
                   json: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, json=json or {})

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
