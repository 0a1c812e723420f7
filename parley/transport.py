import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .errors import ServerConnectionError


logger = logging.getLogger("uvicorn.error")

_DEFAULT_TIMEOUT = 300.0
_DEFAULT_CONNECT_TIMEOUT = 5.0


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            for key in ("error", "detail", "message"):
                val = data.get(key)
                if isinstance(val, str) and val.strip():
                    return val
                if isinstance(val, dict) and val.get("message"):
                    return str(val["message"])
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


class StreamHandle:
    """Raw text output of one streaming response.

    ``close`` may be called at any time, from any task, any number of times.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def chunks(self) -> AsyncIterator[str]:
        if self._closed:
            return
        try:
            async for text in self._response.aiter_text():
                if self._closed:
                    break
                if text:
                    yield text
        except (httpx.TransportError, httpx.StreamError) as exc:
            if self._closed:
                return
            raise ServerConnectionError(f"Stream broken: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        except Exception as exc:
            logger.debug("Ignoring error while closing stream: %s", exc)


class Transport:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        connect_timeout: float = _DEFAULT_CONNECT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=connect_timeout))

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request_json(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: Dict[str, Any] = {"headers": self.headers}
        if payload is not None:
            kwargs["json"] = payload
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self.client.request(method, self.url(path), **kwargs)
        except httpx.HTTPError as exc:
            raise ServerConnectionError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ServerConnectionError(_extract_error_detail(resp) or f"HTTP {resp.status_code}", resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ServerConnectionError(f"{method} {path} returned invalid JSON") from exc

    async def open(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> StreamHandle:
        request = self.client.build_request(method, self.url(path), json=payload, headers=self.headers)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ServerConnectionError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                await response.aread()
                detail = _extract_error_detail(response)
            except httpx.HTTPError:
                detail = ""
            finally:
                await response.aclose()
            raise ServerConnectionError(detail or f"HTTP {response.status_code}", response.status_code)
        return StreamHandle(response)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
