"""Tests for shared.schemas and the failure classification in tunnel.errors."""
from __future__ import annotations

import httpx
import pytest
from pydantic import ValidationError

from shared.schemas import (
    GenerationRequest,
    ImageResult,
    LocalModel,
    RequestPayload,
    ResultReport,
    SyncModelEntry,
    TextResult,
    VideoResult,
)
from tunnel.errors import (
    CONNECT_FAILED_MESSAGE,
    ControlPlaneError,
    ModelNotFoundError,
    ProviderError,
    classify_comfy_error,
    describe_failure,
)


# ---------------------------------------------------------------------------
# ResultReport
# ---------------------------------------------------------------------------
def test_report_success_and_failure():
    ok = ResultReport(success=True, result={"content": "hi"})
    failed = ResultReport(success=False, error="boom")

    assert ok.error is None
    assert failed.result is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"success": True, "result": {}, "error": "boom"},
        {"success": False, "result": {"content": "x"}, "error": "boom"},
        {"success": False},
        {"success": False, "error": ""},
    ],
    ids=["success-with-error", "failure-with-result", "failure-without-error", "failure-empty-error"],
)
def test_report_rejects_mixed_outcomes(kwargs):
    with pytest.raises(ValidationError):
        ResultReport(**kwargs)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "wire_type, request_type, capability",
    [
        ("llm_chat", "llm_chat", "text"),
        ("chat", "llm_chat", "text"),
        ("image_generation", "image_generation", "image"),
        ("image", "image_generation", "image"),
        ("video", "video_generation", "video"),
        ("audio_generation", "audio_generation", None),
    ],
)
def test_request_type_aliases(wire_type, request_type, capability):
    request = GenerationRequest.model_validate({"id": "r", "modelId": "m", "requestType": wire_type})

    assert request.request_type == request_type
    assert request.capability == capability


def test_request_defaults_to_empty_payload():
    request = GenerationRequest.model_validate({"id": "r", "modelId": "m", "requestType": "image"})

    assert request.payload.config == {}
    assert request.payload.prompt is None



def test_null_payload_fields_fall_back_to_defaults():
    request = GenerationRequest.model_validate({
        "id": "r", "modelId": "m", "requestType": "llm_chat", "payload": None,
    })
    assert request.payload.config == {}

    payload = RequestPayload.model_validate({"config": None, "messages": [{"role": "tool", "content": None}]})
    assert payload.config == {}
    assert payload.messages[0].role == "tool"
    assert payload.messages[0].content == ""


# ---------------------------------------------------------------------------
# Results on the wire
# ---------------------------------------------------------------------------
def test_text_result_wire():
    assert TextResult(content="hi").to_wire() == {
        "content": "hi",
        "usage": {"promptTokens": 0, "completionTokens": 0},
    }


def test_image_result_wire():
    assert ImageResult(image_bytes=b"abc").to_wire() == {"imageBase64": "YWJj", "mimeType": "image/png"}
    assert ImageResult(image_bytes=b"abc", seed=3).to_wire()["seed"] == 3


def test_video_result_wire():
    wire = VideoResult(video_bytes=b"abc", duration_seconds=5.125, fps=8, seed=9).to_wire()

    assert wire == {
        "videoBase64": "YWJj",
        "mimeType": "video/mp4",
        "duration": 5.125,
        "fps": 8,
        "seed": 9,
    }


def test_local_model_wire_and_sync_entry():
    model = LocalModel(name="sdxl", provider="stable-diffusion", capability="image",
                       parameter_size="6.6B", status_hint="loading")

    assert model.to_wire() == {
        "name": "sdxl",
        "provider": "stable-diffusion",
        "capability": "image",
        "parameterSize": "6.6B",
        "statusHint": "loading",
    }
    assert SyncModelEntry.from_local_model(model).type == "image_generation"


# ---------------------------------------------------------------------------
# Failure messages
# ---------------------------------------------------------------------------
class TestDescribeFailure:
    def test_model_not_found(self):
        assert describe_failure(ModelNotFoundError("llama3"), "llama3") == (
            "Model llama3 not found. Is it registered on your local server?"
        )

    def test_any_404_status(self):
        assert describe_failure(ProviderError("gone", status_code=404), "qwen") == (
            "Model qwen not found. Is it registered on your local server?"
        )

    def test_http_status_error_404(self):
        request = httpx.Request("POST", "http://localhost:11434/api/chat")
        response = httpx.Response(404, request=request)
        error = httpx.HTTPStatusError("not found", request=request, response=response)

        assert "Model phi not found" in describe_failure(error, "phi")

    def test_connection_refused(self):
        assert describe_failure(httpx.ConnectError("refused"), "m") == CONNECT_FAILED_MESSAGE
        assert describe_failure(ConnectionRefusedError(), "m") == CONNECT_FAILED_MESSAGE

    def test_other_errors(self):
        assert describe_failure(ControlPlaneError("Poll failed: 500", status_code=500), "m") == "Poll failed: 500"
        assert describe_failure(RuntimeError(), "m") == "Unknown error (RuntimeError)"


@pytest.mark.parametrize(
    "message, category",
    [
        ("CUDA error: no kernel image is available for execution on the device", "cuda_unsupported_arch"),
        ("torch.OutOfMemoryError: CUDA out of memory. Tried to allocate 2.00 GiB", "oom"),
        ("Value not in list: ckpt_name: 'ltx.safetensors' not in []", "missing_model_file"),
        ("Node type not found: VHS_VideoCombine", "missing_custom_node"),
        ("something strange happened", "unknown"),
        ("", "unknown"),
    ],
)
def test_classify_comfy_error(message, category):
    hint = classify_comfy_error(message)

    assert hint["category"] == category
    assert hint["action"]
