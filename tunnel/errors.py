from __future__ import annotations

from typing import Dict, List, Optional

import httpx


NOT_REGISTERED_TEMPLATE = "Model {model_id} not found. Is it registered on your local server?"
CONNECT_FAILED_MESSAGE = (
    "Failed to connect to the API. Please make sure your local model server is running."
)


class TunnelError(Exception):
    """Base class for all tunnel errors."""


class ConfigurationError(TunnelError):
    """Fatal at startup: missing credentials, no reachable provider, bad config."""


class NotAuthenticatedError(ConfigurationError):
    def __init__(self, message: str = "Not authenticated. Run: mindstudio-local auth"):
        super().__init__(message)


class ControlPlaneError(TunnelError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidRequestError(ControlPlaneError):
    """A polled request whose body could not be parsed; it still needs a failed result."""

    def __init__(self, request_id: str, message: str):
        super().__init__(f"Invalid request payload: {message}")
        self.request_id = request_id


class ProviderError(TunnelError):
    """A local backend rejected or failed a generation call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelNotFoundError(ProviderError):
    def __init__(self, model_id: str):
        super().__init__(NOT_REGISTERED_TEMPLATE.format(model_id=model_id), status_code=404)
        self.model_id = model_id


class UnsupportedCapabilityError(ProviderError):
    pass


class WorkflowError(ProviderError):
    """ComfyUI workflow failure; carries the offending node type when known."""

    def __init__(self, message: str, node_type: Optional[str] = None):
        super().__init__(message)
        self.node_type = node_type


class WorkflowValidationError(WorkflowError):
    pass


class WorkflowTimeoutError(WorkflowError):
    pass


CUDA_UNSUPPORTED_REMEDIATION = [
    "This ComfyUI install is using a PyTorch/CUDA build that doesn't support this GPU architecture.",
    "Fix: reinstall PyTorch with a CUDA build that supports your GPU, then restart ComfyUI.",
]


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_comfy_error(msg: str) -> Dict[str, object]:
    """Classify ComfyUI error messages into a short explanation + remediation steps."""
    message = msg or ""
    if _contains_any(message, ["no kernel image is available for execution on the device"]):
        return {
            "category": "cuda_unsupported_arch",
            "short": "Torch/CUDA build doesn't support this GPU (kernel image not available).",
            "action": CUDA_UNSUPPORTED_REMEDIATION,
        }
    if _contains_any(message, ["out of memory", "outofmemoryerror"]):
        return {
            "category": "oom",
            "short": "GPU out of memory.",
            "action": [
                "Reduce resolution, frame count, or steps.",
                "Close other GPU workloads and retry.",
            ],
        }
    if _contains_any(message, ["value not in list", "ckpt_name", "unet_name", "clip_name", "vae_name"]):
        return {
            "category": "missing_model_file",
            "short": "A model file referenced by the workflow is not installed.",
            "action": [
                "Download the checkpoint / text encoder / VAE named in the error into ComfyUI's models folder.",
                "Restart ComfyUI so it rescans its model folders.",
            ],
        }
    if _contains_any(message, ["does not exist", "node type not found", "vhs_videocombine"]):
        return {
            "category": "missing_custom_node",
            "short": "The workflow uses a node that is not installed.",
            "action": [
                "Install the missing custom node pack (e.g. ComfyUI-VideoHelperSuite) and restart ComfyUI.",
            ],
        }
    return {
        "category": "unknown",
        "short": "ComfyUI execution error.",
        "action": ["Check the ComfyUI console for the full traceback."],
    }


def _status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return getattr(exc, "status_code", None)


def describe_failure(exc: BaseException, model_id: str) -> str:
    """Turn an exception raised while serving a request into the message reported upstream."""
    if isinstance(exc, ModelNotFoundError) or _status_code_of(exc) == 404:
        return NOT_REGISTERED_TEMPLATE.format(model_id=model_id)
    if isinstance(exc, (httpx.ConnectError, ConnectionRefusedError)):
        return CONNECT_FAILED_MESSAGE
    message = str(exc).strip()
    if not message:
        return f"Unknown error ({type(exc).__name__})"
    return message
