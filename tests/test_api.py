"""Tests for tunnel.api: the control-plane client."""
from __future__ import annotations

import json

import httpx
import pytest

from shared.schemas import ResultReport, SyncModelEntry
from tunnel.api import ControlPlaneClient
from tunnel.config import TunnelConfig
from tunnel.errors import ControlPlaneError, InvalidRequestError, NotAuthenticatedError


class Recorder:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        response = self.responses.get(key)
        if response is None:
            return httpx.Response(404)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def make_client(responses, api_key="sk-live"):
    recorder = Recorder(responses)
    client = ControlPlaneClient("https://api.test/", api_key=api_key, transport=httpx.MockTransport(recorder))
    return client, recorder


POLL = ("GET", "/v1/local-models/poll")


class TestPoll:
    @pytest.mark.asyncio
    async def test_no_content_means_no_request(self):
        client, recorder = make_client({POLL: httpx.Response(204)})

        async with client:
            assert await client.poll(["llama3", "sdxl"]) is None

        sent = recorder.requests[0]
        assert sent.url.params["modelIds"] == "llama3,sdxl"
        assert sent.headers["Authorization"] == "Bearer sk-live"

    @pytest.mark.asyncio
    async def test_request_is_parsed(self):
        body = {"request": {
            "id": "req-9",
            "modelId": "llama3",
            "requestType": "llm_chat",
            "payload": {"messages": [{"role": "user", "content": "hi"}], "maxTokens": 10},
            "createdAt": 1700000000000,
        }}
        client, _ = make_client({POLL: httpx.Response(200, json=body)})

        async with client:
            request = await client.poll(["llama3"])

        assert request.id == "req-9"
        assert request.model_id == "llama3"
        assert request.capability == "text"
        assert request.payload.max_tokens == 10
        assert request.payload.messages[0].content == "hi"

    @pytest.mark.asyncio
    async def test_lenient_roles_and_null_fields_are_accepted(self):
        body = {"request": {
            "id": "r1",
            "modelId": "llama3",
            "requestType": "llm_chat",
            "payload": {
                "messages": [{"role": "tool", "content": None}, {"role": "developer", "content": "be brief"}],
                "config": None,
            },
        }}
        client, _ = make_client({POLL: httpx.Response(200, json=body)})

        async with client:
            request = await client.poll(["llama3"])

        assert [m.role for m in request.payload.messages] == ["tool", "developer"]
        assert request.payload.messages[0].content == ""
        assert request.payload.config == {}

    @pytest.mark.asyncio
    async def test_invalid_payload_still_identifies_the_request(self):
        body = {"request": {
            "id": "r1",
            "modelId": "sdxl",
            "requestType": "image_generation",
            "payload": {"prompt": {"text": "a cat"}, "maxTokens": "lots"},
        }}
        client, _ = make_client({POLL: httpx.Response(200, json=body)})

        async with client:
            with pytest.raises(InvalidRequestError) as exc_info:
                await client.poll(["sdxl"])

        assert exc_info.value.request_id == "r1"
        assert "payload.prompt" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_request_without_id_is_a_poll_error(self):
        body = {"request": {"modelId": "llama3", "requestType": "llm_chat"}}
        client, _ = make_client({POLL: httpx.Response(200, json=body)})

        async with client:
            with pytest.raises(ControlPlaneError) as exc_info:
                await client.poll(["llama3"])

        assert not isinstance(exc_info.value, InvalidRequestError)

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        client, _ = make_client({POLL: httpx.Response(502, text="bad gateway")})

        async with client:
            with pytest.raises(ControlPlaneError) as exc_info:
                await client.poll(["llama3"])

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_sending(self):
        client, recorder = make_client({POLL: httpx.Response(204)}, api_key=None)

        async with client:
            with pytest.raises(NotAuthenticatedError):
                await client.poll(["llama3"])

        assert recorder.requests == []


class TestProgressAndResults:
    @pytest.mark.asyncio
    async def test_chat_progress_body(self):
        path = ("POST", "/v1/local-models/requests/req-1/progress")
        client, recorder = make_client({path: httpx.Response(200, json={})})

        async with client:
            await client.submit_progress("req-1", "Hello")

        assert json.loads(recorder.requests[0].content) == {"type": "chunk", "content": "Hello"}

    @pytest.mark.asyncio
    async def test_generation_progress_body(self):
        path = ("POST", "/v1/local-models/requests/req-1/progress")
        client, recorder = make_client({path: httpx.Response(200, json={})})

        async with client:
            await client.submit_generation_progress("req-1", 4, 20)
            await client.submit_generation_progress("req-1", 5, 20, preview="aGk=")

        bodies = [json.loads(r.content) for r in recorder.requests]
        assert bodies == [
            {"type": "progress", "step": 4, "totalSteps": 20},
            {"type": "progress", "step": 5, "totalSteps": 20, "preview": "aGk="},
        ]

    @pytest.mark.asyncio
    async def test_progress_failures_are_swallowed(self):
        path = ("POST", "/v1/local-models/requests/req-1/progress")
        client, _ = make_client({path: httpx.ConnectError("unreachable")})

        async with client:
            await client.submit_progress("req-1", "partial")

        client, _ = make_client({path: httpx.Response(500)})
        async with client:
            await client.submit_progress("req-1", "partial")

    @pytest.mark.asyncio
    async def test_result_bodies(self):
        path = ("POST", "/v1/local-models/requests/req-1/result")
        client, recorder = make_client({path: httpx.Response(200, json={})})

        async with client:
            await client.submit_result("req-1", ResultReport(success=True, result={"content": "hi"}))
            await client.submit_result("req-1", ResultReport(success=False, error="boom"))

        bodies = [json.loads(r.content) for r in recorder.requests]
        assert bodies == [
            {"success": True, "result": {"content": "hi"}},
            {"success": False, "error": "boom"},
        ]

    @pytest.mark.asyncio
    async def test_result_rejection_raises(self):
        path = ("POST", "/v1/local-models/requests/req-1/result")
        client, _ = make_client({path: httpx.Response(409, text="already reported")})

        async with client:
            with pytest.raises(ControlPlaneError, match="409"):
                await client.submit_result("req-1", ResultReport(success=False, error="boom"))


class TestAccount:
    @pytest.mark.asyncio
    async def test_verify_api_key(self):
        client, _ = make_client({("GET", "/v1/local-models/verify-api-key"): httpx.Response(204)})
        async with client:
            assert await client.verify_api_key() is True

        client, _ = make_client({("GET", "/v1/local-models/verify-api-key"): httpx.Response(401)})
        async with client:
            assert await client.verify_api_key() is False

        client, _ = make_client({("GET", "/v1/local-models/verify-api-key"): httpx.ConnectError("down")})
        async with client:
            assert await client.verify_api_key() is False

    @pytest.mark.asyncio
    async def test_sync_and_list_models(self):
        client, recorder = make_client({
            ("POST", "/v1/local-models/models/sync"): httpx.Response(200, json={}),
            ("GET", "/v1/local-models/models"): httpx.Response(200, json={
                "models": [{"id": "m-1", "name": "llama3"}],
            }),
        })
        entries = [SyncModelEntry(name="llama3", provider="ollama", type="llm_chat")]

        async with client:
            await client.sync_models(entries)
            synced = await client.get_synced_models()

        assert json.loads(recorder.requests[0].content) == {
            "models": [{"name": "llama3", "provider": "ollama", "type": "llm_chat"}],
        }
        assert [(m.id, m.name) for m in synced] == [("m-1", "llama3")]

    @pytest.mark.asyncio
    async def test_disconnect(self):
        client, recorder = make_client({("POST", "/v1/local-models/disconnect"): httpx.Response(200, json={})})

        async with client:
            await client.disconnect()

        assert recorder.requests[0].url.path == "/v1/local-models/disconnect"

    @pytest.mark.asyncio
    async def test_device_auth_is_unauthenticated(self):
        client, recorder = make_client({
            ("GET", "/developer/v2/request-auth-url"): httpx.Response(200, json={"url": "https://x", "token": "t"}),
            ("POST", "/developer/v2/poll-auth-url"): httpx.Response(200, json={"status": "pending"}),
        }, api_key=None)

        async with client:
            start = await client.request_device_auth()
            status = await client.poll_device_auth(start["token"])

        assert status == {"status": "pending"}
        assert all("Authorization" not in r.headers for r in recorder.requests)
        assert json.loads(recorder.requests[1].content) == {"token": "t"}


def test_from_config_uses_active_environment():
    config = TunnelConfig()
    config.environments["local"].api_key = "sk-local"
    config.environment_override = "local"

    client = ControlPlaneClient.from_config(config)

    assert client.base_url == "http://localhost:3129"
    assert client.api_key == "sk-local"
