"""
ComfyUI workflow execution.

Runs one API-format workflow graph to completion:
1. Submit the graph to POST /prompt under a fresh client id
2. Listen on the websocket for events about our prompt_id only
3. Read the finished job's outputs from /history and pick the artifact
4. Download the artifact via /view

The websocket is read by a background task that feeds a queue, so the
waiting side reads events sequentially against a single deadline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.schemas import GenerationProgress
from tunnel.backends.base import ProgressCallback, emit_progress
from tunnel.errors import (
    ProviderError,
    WorkflowError,
    WorkflowTimeoutError,
    WorkflowValidationError,
    classify_comfy_error,
)
from tunnel.http_client import LoggedHTTPClient

log = logging.getLogger("mindstudio-tunnel.comfy_ws")

DEFAULT_WORKFLOW_TIMEOUT_S = 30 * 60
HISTORY_TIMEOUT_S = 30.0
VIEW_TIMEOUT_S = 60.0

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}

_CLOSED = object()
_BASE36 = string.digits + string.ascii_lowercase


def new_client_id() -> str:
    suffix = "".join(random.choice(_BASE36) for _ in range(11))
    return f"mindstudio_{int(time.time() * 1000)}_{suffix}"


def ws_url_for(base_url: str, client_id: str) -> str:
    """Convert the HTTP base URL to the websocket endpoint."""
    ws_url = base_url.rstrip("/").replace("http://", "ws://", 1).replace("https://", "wss://", 1)
    return f"{ws_url}/ws?clientId={client_id}"


def mime_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return MIME_TYPES.get(ext, "application/octet-stream")


def pick_output_file(outputs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Choose the artifact to return from a history entry's outputs.

    Animated outputs (``gifs``, which is where VideoHelperSuite reports
    videos) win over still images; among equals the first node wins.
    """
    picked = None
    for node_outputs in outputs.values():
        if not isinstance(node_outputs, dict):
            continue
        gifs = node_outputs.get("gifs") or []
        if gifs:
            return gifs[0]
        images = node_outputs.get("images") or []
        if picked is None and images:
            picked = images[0]
    return picked


@dataclass
class WorkflowJob:
    prompt_id: str
    client_id: str
    status: str = "submitted"  # submitted -> running -> succeeded | failed | timed_out


@dataclass
class WorkflowOutput:
    data: bytes
    mime_type: str
    filename: str


@dataclass
class ComfyWSTracker:
    """
    Follows one prompt over the ComfyUI websocket.

    ComfyUI websocket message types handled here:
    - progress: Sampler progress (value, max, node; prompt_id on newer builds)
    - executing: node=None with our prompt_id means the prompt finished
    - execution_success: Prompt finished
    - execution_error: Prompt failed (exception_message, node_type)
    - execution_interrupted: Prompt was cancelled on the server
    Everything else (status, executed, execution_cached, previews) is ignored.
    """
    job: WorkflowJob
    on_progress: Optional[ProgressCallback] = None
    events_seen: int = field(default=0, init=False)

    async def handle_message(self, data: Dict[str, Any]) -> bool:
        """Handle one parsed message. Returns True once the prompt succeeded."""
        msg_type = data.get("type", "")
        msg_data = data.get("data") or {}
        msg_prompt_id = msg_data.get("prompt_id")
        self.events_seen += 1

        if msg_type == "progress":
            if msg_prompt_id is None or msg_prompt_id == self.job.prompt_id:
                self.job.status = "running"
                await emit_progress(self.on_progress, GenerationProgress(
                    step=int(msg_data.get("value") or 0),
                    total_steps=int(msg_data.get("max") or 0),
                    current_node=msg_data.get("node"),
                ))
            return False

        if msg_prompt_id != self.job.prompt_id:
            return False

        if msg_type in ("execution_start", "executing"):
            self.job.status = "running"
            if msg_type == "executing" and msg_data.get("node") is None:
                log.info(f"Execution finished for prompt {self.job.prompt_id} (node=None signal)")
                return True
            return False

        if msg_type == "execution_success":
            return True

        if msg_type == "execution_error":
            node_type = msg_data.get("node_type")
            exception_message = msg_data.get("exception_message") or "Unknown error"
            where = f" in {node_type}" if node_type else ""
            hint = classify_comfy_error(exception_message)
            log.error(
                f"Execution error for prompt {self.job.prompt_id}: {exception_message} "
                f"[{hint['category']}] {hint['short']}"
            )
            raise WorkflowError(f"ComfyUI execution error{where}: {exception_message}", node_type=node_type)

        if msg_type == "execution_interrupted":
            raise WorkflowError(
                "ComfyUI workflow execution was interrupted",
                node_type=msg_data.get("node_type"),
            )

        return False


async def _pump(ws: Any, queue: asyncio.Queue) -> None:
    try:
        async for message in ws:
            await queue.put(message)
    except ConnectionClosed as e:
        log.warning(f"ComfyUI websocket closed: {e}")
    finally:
        await queue.put(_CLOSED)


async def _wait_for_finish(ws: Any, tracker: ComfyWSTracker, timeout_s: float) -> None:
    queue: asyncio.Queue = asyncio.Queue()
    reader = asyncio.create_task(_pump(ws, queue))
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            message = await asyncio.wait_for(queue.get(), timeout=remaining)
            if message is _CLOSED:
                raise WorkflowError("ComfyUI WebSocket connection closed unexpectedly")
            if isinstance(message, (bytes, bytearray)):
                # Binary frames are preview images
                continue
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                log.debug(f"Non-JSON websocket message: {message[:100]}")
                continue
            if isinstance(data, dict) and await tracker.handle_message(data):
                return
    finally:
        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass


async def _already_finished(http: LoggedHTTPClient, job: WorkflowJob) -> bool:
    """Fast jobs can finish before the socket is open; history tells us."""
    try:
        resp = await http.get(f"/history/{job.prompt_id}", timeout=HISTORY_TIMEOUT_S)
        if not resp.is_success:
            return False
        entry = (resp.json() or {}).get(job.prompt_id)
    except ValueError:
        return False
    if not entry:
        return False
    status = entry.get("status") or {}
    if status.get("status_str") == "error":
        raise WorkflowError(f"ComfyUI execution error: {status.get('messages') or 'unknown'}")
    return status.get("completed") is True


async def submit_workflow(http: LoggedHTTPClient, workflow: Dict[str, Any], client_id: str) -> WorkflowJob:
    resp = await http.post("/prompt", json={"prompt": workflow, "client_id": client_id})
    if not resp.is_success:
        raise ProviderError(
            f"ComfyUI prompt submission failed: {resp.status_code} {resp.text}",
            status_code=resp.status_code,
        )
    body = resp.json() or {}
    node_errors = body.get("node_errors")
    if node_errors:
        raise WorkflowValidationError(f"ComfyUI workflow validation failed: {json.dumps(node_errors)}")
    prompt_id = body.get("prompt_id")
    if not prompt_id:
        raise WorkflowError(f"ComfyUI did not return a prompt_id: {resp.text}")
    return WorkflowJob(prompt_id=prompt_id, client_id=client_id)


async def fetch_output(http: LoggedHTTPClient, prompt_id: str) -> WorkflowOutput:
    resp = await http.get(f"/history/{prompt_id}", timeout=HISTORY_TIMEOUT_S)
    if not resp.is_success:
        raise ProviderError(f"Failed to fetch result history: {resp.status_code}", status_code=resp.status_code)
    entry = (resp.json() or {}).get(prompt_id)
    if not entry:
        raise WorkflowError("No result found in ComfyUI history")

    output_file = pick_output_file(entry.get("outputs") or {})
    if not output_file:
        raise WorkflowError("No output files found in ComfyUI result")

    filename = output_file["filename"]
    view = await http.get(
        "/view",
        params={
            "filename": filename,
            "subfolder": output_file.get("subfolder") or "",
            "type": output_file.get("type") or "output",
        },
        timeout=VIEW_TIMEOUT_S,
    )
    if not view.is_success:
        raise ProviderError(f"Failed to download output file: {view.status_code}", status_code=view.status_code)
    return WorkflowOutput(data=view.content, mime_type=mime_type_for(filename), filename=filename)


async def execute_workflow(
    http: LoggedHTTPClient,
    base_url: str,
    workflow: Dict[str, Any],
    on_progress: Optional[ProgressCallback] = None,
    timeout_s: float = DEFAULT_WORKFLOW_TIMEOUT_S,
) -> WorkflowOutput:
    """
    Run a workflow graph and return the produced artifact.

    Args:
        http: Open client rooted at the ComfyUI base URL
        base_url: ComfyUI base URL, used to derive the websocket URL
        workflow: API-format graph (node id -> {class_type, inputs})
        on_progress: Awaited for every sampler progress event of this prompt
        timeout_s: Ceiling on the wait for completion

    Raises:
        WorkflowValidationError: ComfyUI rejected the graph at submission
        WorkflowError: Execution failed, was interrupted, or the socket dropped
        WorkflowTimeoutError: No completion within timeout_s
    """
    client_id = new_client_id()
    job = await submit_workflow(http, workflow, client_id)
    log.info(f"Submitted prompt {job.prompt_id} (client {client_id})")

    tracker = ComfyWSTracker(job=job, on_progress=on_progress)
    ws_url = ws_url_for(base_url, client_id)
    try:
        async with websockets.connect(ws_url, ping_interval=20, ping_timeout=30, max_size=None) as ws:
            log.info(f"Connected to ComfyUI websocket for prompt {job.prompt_id}")
            if not await _already_finished(http, job):
                await _wait_for_finish(ws, tracker, timeout_s)
    except asyncio.TimeoutError:
        job.status = "timed_out"
        raise WorkflowTimeoutError(f"ComfyUI workflow timed out after {timeout_s:g}s") from None
    except (OSError, WebSocketException) as e:
        job.status = "failed"
        raise WorkflowError(f"Failed to connect to ComfyUI WebSocket: {e}") from e
    except WorkflowError:
        job.status = "failed"
        raise

    job.status = "succeeded"
    log.info(f"Prompt {job.prompt_id} succeeded after {tracker.events_seen} events")
    return await fetch_output(http, job.prompt_id)
