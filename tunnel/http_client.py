"""
Logged httpx client shared by the control-plane client and every provider.

Each outbound call produces one ``http_out`` event (or ``http_out_error``
when the transport fails). Error statuses are returned to the caller, not
raised.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx

from tunnel.logging_utils import Timer, get_logger, timer

# Default timeouts per service. Local LLM servers get no read timeout so long
# generations can stream; the control plane allows for its long-poll.
SERVICE_TIMEOUTS: Dict[str, httpx.Timeout] = {
    "control_plane": httpx.Timeout(connect=10.0, read=120.0, write=30.0, pool=10.0),
    "ollama": httpx.Timeout(connect=5.0, read=None, write=60.0, pool=10.0),
    "lmstudio": httpx.Timeout(connect=5.0, read=None, write=60.0, pool=10.0),
    "stable-diffusion": httpx.Timeout(connect=10.0, read=600.0, write=60.0, pool=10.0),
    "comfyui": httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0),
}


def _describe(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return f"Timeout: {exc}"
    if isinstance(exc, httpx.ConnectError):
        return f"Connection error: {exc}"
    return f"{type(exc).__name__}: {exc}"


class LoggedHTTPClient:
    """
    httpx.AsyncClient wrapper bound to one named service.

    Use as ``async with`` for short-lived calls, or ``open()``/``aclose()``
    for a client kept for the life of a provider.
    """

    def __init__(
        self,
        service: str,
        base_url: Optional[str] = None,
        timeout: Optional[httpx.Timeout] = None,
        headers: Optional[Dict[str, str]] = None,
        **client_kwargs
    ):
        self.service = service
        self.logger = get_logger()

        options = {"base_url": base_url, "timeout": timeout, "headers": headers}
        self._client_kwargs = {**client_kwargs, **{k: v for k, v in options.items() if v}}
        self._client: Optional[httpx.AsyncClient] = None

    def open(self) -> "LoggedHTTPClient":
        if self._client is None:
            self._client = httpx.AsyncClient(**self._client_kwargs)
        return self

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def __aenter__(self):
        return self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.service} client is not open; use 'async with' or call open()")
        return self._client

    def _log_call(self, method: str, url: Any, call_id: str, t: Timer, kwargs: Dict[str, Any], **outcome):
        timeout = kwargs.get("timeout")
        if isinstance(timeout, httpx.Timeout):
            timeout = timeout.read or timeout.connect
        self.logger.http_out(
            service=self.service,
            method=method,
            url=str(url),
            call_id=call_id,
            timeout=timeout,
            headers=kwargs.get("headers"),
            request_body=kwargs.get("json") or kwargs.get("data") or kwargs.get("content"),
            duration_ms=t.stop(),
            **outcome,
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        call_id = uuid.uuid4().hex[:8]
        with timer() as t:
            try:
                response = await self.client.request(method, url, **kwargs)
            except Exception as e:
                self._log_call(method, url, call_id, t, kwargs, error=_describe(e))
                raise
        failed = response.status_code >= 400
        self._log_call(
            method, url, call_id, t, kwargs,
            status_code=response.status_code,
            response_body=response.text if failed else None,
        )
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    @asynccontextmanager
    async def stream(self, method: str, url: str, **kwargs):
        """Open a streaming response; the event is logged once headers arrive."""
        call_id = uuid.uuid4().hex[:8]
        with timer() as t:
            try:
                async with self.client.stream(method, url, **kwargs) as response:
                    self._log_call(method, url, call_id, t, kwargs, status_code=response.status_code)
                    yield response
            except httpx.TransportError as e:
                self._log_call(method, url, call_id, t, kwargs, error=_describe(e))
                raise


def service_client(
    service: str, base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs
) -> LoggedHTTPClient:
    return LoggedHTTPClient(service, base_url=base_url, timeout=timeout or SERVICE_TIMEOUTS[service], **kwargs)


def comfyui_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    return service_client("comfyui", base_url, timeout, **kwargs)


def ollama_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    return service_client("ollama", base_url, timeout, **kwargs)


def lmstudio_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    return service_client("lmstudio", base_url, timeout, **kwargs)


def sd_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    return service_client("stable-diffusion", base_url, timeout, **kwargs)


def control_plane_client(base_url: str, timeout: Optional[httpx.Timeout] = None, **kwargs) -> LoggedHTTPClient:
    """Client for the MindStudio control plane; pass auth via ``headers=``."""
    return service_client("control_plane", base_url, timeout, **kwargs)
