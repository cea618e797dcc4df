"""
MindStudio control-plane client.

All tunnel endpoints live under <apiBaseUrl>/v1/local-models and use bearer
auth with the stored API key. The device-auth endpoints used by
``mindstudio-local auth`` are unauthenticated.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from pydantic import ValidationError

from shared.schemas import GenerationRequest, ResultReport, SyncedModel, SyncModelEntry
from tunnel.errors import ControlPlaneError, InvalidRequestError, NotAuthenticatedError
from tunnel.http_client import LoggedHTTPClient, control_plane_client
from tunnel.logging_utils import get_logger

LOCAL_MODELS_PREFIX = "/v1/local-models"


class ControlPlaneClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.logger = get_logger()
        kwargs: Dict[str, Any] = {"transport": transport} if transport is not None else {}
        self._http: LoggedHTTPClient = control_plane_client(self.base_url, **kwargs)

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ControlPlaneClient":
        return cls(config.api_base_url, api_key=config.api_key, transport=transport)

    def open(self) -> "ControlPlaneClient":
        self._http.open()
        return self

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise NotAuthenticatedError()
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _call(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._http.request(method, LOCAL_MODELS_PREFIX + path, headers=self._headers(), **kwargs)

    @staticmethod
    def _raise_for(resp: httpx.Response, what: str) -> None:
        if not resp.is_success:
            raise ControlPlaneError(f"{what} failed: {resp.status_code} {resp.text}", status_code=resp.status_code)

    async def poll(self, model_ids: List[str]) -> Optional[GenerationRequest]:
        """
        Long-poll for the next request addressed to one of model_ids; None on 204.

        A request that carries an id but fails validation raises
        InvalidRequestError so the caller can still report it as failed.
        """
        resp = await self._call("GET", "/poll", params={"modelIds": ",".join(model_ids)})
        if resp.status_code == 204:
            return None
        self._raise_for(resp, "Poll")
        body = (resp.json() or {}).get("request")
        try:
            return GenerationRequest.model_validate(body)
        except ValidationError as e:
            request_id = body.get("id") if isinstance(body, dict) else None
            if not isinstance(request_id, str) or not request_id:
                raise ControlPlaneError(f"Malformed poll response: {e}") from e
            errors = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            raise InvalidRequestError(request_id, errors) from e

    async def _progress(self, request_id: str, body: Dict[str, Any]) -> None:
        try:
            resp = await self._call("POST", f"/requests/{request_id}/progress", json=body)
        except httpx.HTTPError as e:
            self.logger.warning("progress_update_failed", request_id=request_id, error=str(e))
            return
        if not resp.is_success:
            self.logger.warning("progress_update_failed", request_id=request_id, status_code=resp.status_code)

    async def submit_progress(self, request_id: str, content: str) -> None:
        """Best-effort: the accumulated text so far for a chat request."""
        await self._progress(request_id, {"type": "chunk", "content": content})

    async def submit_generation_progress(
        self,
        request_id: str,
        step: int,
        total_steps: int,
        preview: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"type": "progress", "step": step, "totalSteps": total_steps}
        if preview:
            body["preview"] = preview
        await self._progress(request_id, body)

    async def submit_result(self, request_id: str, report: ResultReport) -> None:
        resp = await self._call(
            "POST",
            f"/requests/{request_id}/result",
            json=report.model_dump(exclude_none=True),
        )
        self._raise_for(resp, "Result submission")

    async def disconnect(self) -> None:
        resp = await self._call("POST", "/disconnect")
        self._raise_for(resp, "Disconnect")

    async def verify_api_key(self) -> bool:
        try:
            resp = await self._call("GET", "/verify-api-key")
        except httpx.HTTPError:
            return False
        return resp.status_code == 204 or resp.is_success

    async def sync_models(self, models: List[SyncModelEntry]) -> None:
        resp = await self._call(
            "POST",
            "/models/sync",
            json={"models": [m.to_wire() for m in models]},
        )
        self._raise_for(resp, "Sync")

    async def get_synced_models(self) -> List[SyncedModel]:
        resp = await self._call("GET", "/models")
        self._raise_for(resp, "Fetching synced models")
        return [SyncedModel.model_validate(m) for m in (resp.json() or {}).get("models") or []]

    async def request_device_auth(self) -> Dict[str, str]:
        """Start device login; returns {url, token}."""
        resp = await self._http.get("/developer/v2/request-auth-url")
        self._raise_for(resp, "Device auth request")
        return resp.json()

    async def poll_device_auth(self, token: str) -> Dict[str, Any]:
        """Returns {status: pending|completed|expired, apiKey?}."""
        resp = await self._http.post("/developer/v2/poll-auth-url", json={"token": token})
        self._raise_for(resp, "Device auth poll")
        return resp.json()
