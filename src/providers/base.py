import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ProviderHTTPError(Exception):
    def __init__(self, message: str, status_code: int, headers: Optional[Dict[str, str]] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}
        self.body = body
        self.retry_after = self.headers.get("retry-after") or self.headers.get("Retry-After")

    def __str__(self) -> str:
        return f"ProviderHTTPError(status_code={self.status_code}, retry_after={self.retry_after})"


class MalformedResponseError(Exception):
    """Upstream answered 2xx but the payload is missing what we need."""


class BaseHTTPClient:
    """Base for the upstream API clients (LLM, Notion).

    Subclasses provide ``provider_name``, ``base_url`` and ``_headers()``.
    A client may be injected for tests; otherwise one is created lazily.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        transport_retries: int = 0,
    ) -> None:
        self._provider_name = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport_retries = transport_retries
        self._client = client

    @property
    def name(self) -> str:
        return self._provider_name

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # transport retries only cover connection failures
            transport = httpx.AsyncHTTPTransport(retries=self._transport_retries)
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        client = self._get_client()
        kwargs: Dict[str, Any] = {"headers": headers or self._headers()}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = timeout

        resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            body = resp.text
            logger.error("%s API error (%s) on %s %s", self._provider_name, resp.status_code, method, path)
            raise ProviderHTTPError(
                f"{self._provider_name} returned {resp.status_code}",
                resp.status_code,
                dict(resp.headers),
                body,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self._provider_name} returned non-JSON body") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{self._provider_name} returned unexpected JSON shape")
        return data
