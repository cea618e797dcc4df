"""
Model and workflow discovery for ComfyUI.

Two sources are exposed as models:
- Video checkpoints matching a built-in template (LTX-Video, Wan 2.1),
  listed by the loader nodes' /object_info, or by scanning the install's
  model folders when the server does not answer.
- Workflows the user saved in API format, grouped by what they produce into
  "ComfyUI Image Generation" / "ComfyUI Video Generation".
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from shared.schemas import LocalModel
from tunnel.backends.comfy_workflows import template_for_model
from tunnel.http_client import LoggedHTTPClient

log = logging.getLogger("mindstudio-tunnel.comfy_discovery")

PROVIDER_NAME = "comfyui"
DISCOVERY_TIMEOUT_S = 5.0

VIDEO_OUTPUT_NODES = ("VHS_VideoCombine", "SaveVideo")
IMAGE_OUTPUT_NODES = ("SaveImage", "PreviewImage")

WORKFLOW_MODEL_NAMES = {
    "image": "ComfyUI Image Generation",
    "video": "ComfyUI Video Generation",
}
CONVERTER_MISSING_HINT = "Workflow converter not available"

# Loader node -> input that lists the model files it can load
LOADER_INPUTS = (
    ("CheckpointLoaderSimple", "ckpt_name"),
    ("UNETLoader", "unet_name"),
)
MODEL_FOLDERS = ("checkpoints", "diffusion_models")

_NODE_ID = re.compile(r"^\d+$")


def is_api_format(workflow: Any) -> bool:
    """API-format graphs are keyed by numeric node id with a class_type per node."""
    if not isinstance(workflow, dict) or not workflow:
        return False
    return any(
        _NODE_ID.match(str(key)) and isinstance(node, dict) and "class_type" in node
        for key, node in workflow.items()
    )


def detect_capability(workflow: Dict[str, Any]) -> str:
    class_types = [
        node.get("class_type") for node in workflow.values() if isinstance(node, dict)
    ]
    if any(ct in VIDEO_OUTPUT_NODES for ct in class_types):
        return "video"
    return "image"


def _video_model(name: str) -> Optional[LocalModel]:
    template = template_for_model(name)
    if template is None:
        return None
    return LocalModel(
        name=name,
        provider=PROVIDER_NAME,
        capability="video",
        parameter_size=template.display_name,
    )


async def discover_video_checkpoints(
    http: LoggedHTTPClient,
    install_path: Optional[str] = None,
) -> List[LocalModel]:
    models: Dict[str, LocalModel] = {}

    for node, input_name in LOADER_INPUTS:
        try:
            resp = await http.get(f"/object_info/{node}", timeout=DISCOVERY_TIMEOUT_S)
            if not resp.is_success:
                continue
            info = (resp.json() or {}).get(node) or {}
        except (httpx.HTTPError, ValueError) as e:
            log.debug(f"object_info lookup for {node} failed: {e}")
            continue
        required = (info.get("input") or {}).get("required") or {}
        choices = (required.get(input_name) or [[]])[0]
        for name in choices if isinstance(choices, list) else []:
            model = _video_model(name)
            if model is not None and name not in models:
                models[name] = model

    if not models and install_path:
        for folder in MODEL_FOLDERS:
            model_dir = Path(install_path) / "models" / folder
            if not model_dir.is_dir():
                continue
            for entry in sorted(model_dir.iterdir()):
                model = _video_model(entry.name)
                if model is not None and entry.name not in models:
                    models[entry.name] = model

    return list(models.values())


def _scan_workflow_dir(workflow_dir: Path) -> List[str]:
    if not workflow_dir.is_dir():
        return []
    return sorted(
        str(p.relative_to(workflow_dir)).replace(os.sep, "/")
        for p in workflow_dir.rglob("*.json")
    )


async def list_workflow_files(http: LoggedHTTPClient, install_path: Optional[str] = None) -> List[str]:
    try:
        resp = await http.get(
            "/userdata",
            params={"dir": "workflows/", "recurse": "true", "full_info": "true"},
            timeout=DISCOVERY_TIMEOUT_S,
        )
        if resp.is_success:
            entries = resp.json() or []
            paths = [e if isinstance(e, str) else e.get("path", "") for e in entries]
            return [p for p in paths if p.endswith(".json")]
    except (httpx.HTTPError, ValueError) as e:
        log.debug(f"Listing workflows via /userdata failed: {e}")

    if install_path:
        return _scan_workflow_dir(Path(install_path) / "user" / "default" / "workflows")
    return []


async def fetch_workflow(
    http: LoggedHTTPClient,
    file_path: str,
    install_path: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    try:
        resp = await http.get(
            "/userdata/" + quote(f"workflows/{file_path}", safe=""),
            timeout=DISCOVERY_TIMEOUT_S,
        )
        if resp.is_success:
            return resp.json()
    except (httpx.HTTPError, ValueError) as e:
        log.debug(f"Fetching workflow {file_path} via /userdata failed: {e}")

    if install_path:
        full_path = Path(install_path) / "user" / "default" / "workflows" / file_path
        try:
            with open(full_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            return None
    return None


def workflow_parameter(workflows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "comfyWorkflow",
        "variable": "workflow",
        "label": "Workflow",
        "comfyWorkflowOptions": {"availableWorkflows": workflows},
    }


async def discover_workflows(http: LoggedHTTPClient, install_path: Optional[str] = None) -> List[LocalModel]:
    grouped: Dict[str, List[Dict[str, Any]]] = {"image": [], "video": []}
    ui_format_seen = False

    for file_path in await list_workflow_files(http, install_path):
        workflow = await fetch_workflow(http, file_path, install_path)
        if not workflow:
            continue
        if not is_api_format(workflow):
            # UI-format graphs need the converter extension to become runnable
            ui_format_seen = True
            continue
        name = Path(file_path).stem
        grouped[detect_capability(workflow)].append({"name": name, "workflow": workflow})

    models = []
    for capability in ("image", "video"):
        if grouped[capability]:
            models.append(LocalModel(
                name=WORKFLOW_MODEL_NAMES[capability],
                provider=PROVIDER_NAME,
                capability=capability,
                parameters=[workflow_parameter(grouped[capability])],
            ))

    if ui_format_seen and not grouped["image"]:
        models.append(LocalModel(
            name=WORKFLOW_MODEL_NAMES["image"],
            provider=PROVIDER_NAME,
            capability="image",
            status_hint=CONVERTER_MISSING_HINT,
        ))
    return models
