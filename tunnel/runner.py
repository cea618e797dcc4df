"""
Tunnel dispatcher.

Long-polls the control plane for requests addressed to the locally
discovered models, runs each one as its own task against the provider that
owns the model, and reports exactly one outcome per request.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from shared.schemas import GenerationProgress, GenerationRequest, ResultReport, TextResult
from tunnel.api import ControlPlaneClient
from tunnel.backends.base import (
    ChatOptions,
    ImageOptions,
    Provider,
    VideoOptions,
)
from tunnel.config import TunnelConfig
from tunnel.errors import (
    NOT_REGISTERED_TEMPLATE,
    ConfigurationError,
    InvalidRequestError,
    NotAuthenticatedError,
    ProviderError,
    UnsupportedCapabilityError,
    WorkflowError,
    classify_comfy_error,
    describe_failure,
)
from tunnel.logging_utils import get_logger
from tunnel.registry import ProviderRegistry

IDLE = "idle"
RUNNING = "running"
DRAINING = "draining"

Handler = Callable[[GenerationRequest, Provider], Awaitable[Dict[str, Any]]]


class TunnelRunner:
    def __init__(
        self,
        config: TunnelConfig,
        registry: ProviderRegistry,
        api: ControlPlaneClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.registry = registry
        self.api = api
        self.logger = get_logger()
        self._sleep = sleep
        self._clock = clock

        self.state = IDLE
        self.in_flight = 0
        self.consecutive_poll_failures = 0
        self._tasks: Set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Event] = None
        self._semaphore = (
            asyncio.Semaphore(config.max_concurrent_requests)
            if config.max_concurrent_requests
            else None
        )
        self._handlers: Dict[str, Handler] = {
            "llm_chat": self._handle_chat,
            "image_generation": self._handle_image,
            "video_generation": self._handle_video,
        }

    # ----- lifecycle -----
    async def start(self) -> None:
        """Discover models, then poll until stop() is called."""
        if not self.api.api_key:
            raise NotAuthenticatedError()
        models = await self.registry.refresh()
        if not models:
            raise ConfigurationError(
                "No local models found. Make sure a provider is running "
                "(Ollama, LM Studio, Stable Diffusion WebUI or ComfyUI)."
            )
        self.install_signal_handlers()
        await self.run()

    async def rediscover(self) -> None:
        """Rebuild the model map; later polls are scoped to the new names."""
        models = await self.registry.refresh()
        self.logger.info("models_rediscovered", models=[m.name for m in models])

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        handlers = {signal.SIGINT: self.stop, signal.SIGTERM: self.stop}
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = lambda: self._spawn(self.rediscover())
        for sig, callback in handlers.items():
            try:
                loop.add_signal_handler(sig, callback)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support
                pass

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def stop(self) -> None:
        if self.state != RUNNING:
            return
        self.state = DRAINING
        self.logger.info("tunnel_stopping", in_flight=self.in_flight)
        if self._stopped is not None:
            self._stopped.set()

    async def run(self) -> None:
        self._stopped = asyncio.Event()
        self.state = RUNNING
        self.logger.info("tunnel_started", models=self.registry.model_names)
        stop_wait = asyncio.ensure_future(self._stopped.wait())
        try:
            while self.state == RUNNING:
                poll = asyncio.ensure_future(self.poll_once())
                await asyncio.wait({poll, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                if not poll.done():
                    poll.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await poll
                    break
                poll.result()
        finally:
            stop_wait.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        self.state = DRAINING
        try:
            await self.api.disconnect()
        except Exception as e:
            self.logger.warning("disconnect_failed", error=str(e))
        self.logger.info("tunnel_stopped", abandoned_requests=self.in_flight)
        self.state = IDLE

    # ----- polling -----
    async def poll_once(self) -> bool:
        """Poll once; returns True if a request was dispatched."""
        try:
            request = await self.api.poll(self.registry.model_names)
        except NotAuthenticatedError:
            raise
        except InvalidRequestError as e:
            self.consecutive_poll_failures = 0
            await self.reject(e.request_id, str(e))
            return False
        except Exception as e:
            self.consecutive_poll_failures += 1
            self.logger.warning(
                "poll_failed",
                error=str(e),
                consecutive_failures=self.consecutive_poll_failures,
                retry_in_s=self.config.poll_retry_delay_s,
            )
            await self._sleep(self.config.poll_retry_delay_s)
            return False

        self.consecutive_poll_failures = 0
        if request is None:
            return False
        self.dispatch(request)
        return True

    async def reject(self, request_id: str, error: str) -> None:
        """Report a failed result for a request that could not be parsed."""
        self.logger.warning("request_rejected", request_id=request_id, error=error)
        try:
            await self.api.submit_result(request_id, ResultReport(success=False, error=error))
        except Exception as e:
            self.logger.error("result_submit_failed", request_id=request_id, error=str(e))

    def dispatch(self, request: GenerationRequest) -> asyncio.Task:
        self.in_flight += 1
        task = asyncio.ensure_future(self.process_request(request))
        self._tasks.add(task)
        task.add_done_callback(self._request_done)
        return task

    def _request_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self.in_flight -= 1
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("request_task_crashed", error=str(task.exception()))

    # ----- request handling -----
    async def process_request(self, request: GenerationRequest) -> None:
        limiter = self._semaphore if self._semaphore is not None else contextlib.nullcontext()
        async with limiter:
            with self.logger.request_context(
                request.id, request.request_type, model=request.model_id
            ) as ctx:
                report = await self.execute(request)
                if report.success:
                    ctx.milestone("request_completed")
                else:
                    ctx.milestone("request_failed", error=report.error)
                try:
                    await self.api.submit_result(request.id, report)
                except Exception as e:
                    ctx.error("result_submit_failed", error=str(e))

    async def execute(self, request: GenerationRequest) -> ResultReport:
        """Route and run one request; every failure becomes a failed report."""
        provider = self.registry.find_by_model(request.model_id)
        if provider is None:
            return ResultReport(success=False, error=NOT_REGISTERED_TEMPLATE.format(model_id=request.model_id))

        handler = self._handlers.get(request.request_type)
        if handler is None:
            return ResultReport(success=False, error=f"Unknown request type: {request.request_type}")

        try:
            if not provider.supports(request.capability):
                raise UnsupportedCapabilityError(
                    f"Provider {provider.display_name} does not support {request.capability} generation"
                )
            result = await handler(request, provider)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, WorkflowError):
                hint = classify_comfy_error(str(e))
                self.logger.warning(
                    "workflow_failed",
                    request_id=request.id,
                    category=hint["category"],
                    hint=hint["short"],
                    action=hint["action"],
                )
            return ResultReport(success=False, error=describe_failure(e, request.model_id))
        return ResultReport(success=True, result=result)

    async def _handle_chat(self, request: GenerationRequest, provider: Provider) -> Dict[str, Any]:
        payload = request.payload
        options = ChatOptions(temperature=payload.temperature, max_tokens=payload.max_tokens)
        interval = self.config.progress_interval_s

        full_content = ""
        last_sent: Optional[float] = None
        try:
            async for chunk in provider.chat(request.model_id, list(payload.messages or []), options):
                full_content += chunk.content
                now = self._clock()
                if last_sent is None or now - last_sent > interval:
                    await self.api.submit_progress(request.id, full_content)
                    last_sent = now
        except Exception as e:
            if not full_content:
                raise
            raise ProviderError(
                f"{describe_failure(e, request.model_id)} "
                f"(after {len(full_content)} chars of partial output)"
            ) from e

        # The final text always goes out before the result
        await self.api.submit_progress(request.id, full_content)
        return TextResult(content=full_content).to_wire()

    def _progress_forwarder(self, request: GenerationRequest):
        async def forward(progress: GenerationProgress) -> None:
            await self.api.submit_generation_progress(
                request.id,
                progress.step,
                progress.total_steps,
                progress.preview,
            )
        return forward

    async def _handle_image(self, request: GenerationRequest, provider: Provider) -> Dict[str, Any]:
        result = await provider.generate_image(
            request.model_id,
            request.payload.prompt or "",
            ImageOptions.from_config(request.payload.config),
            self._progress_forwarder(request),
        )
        return result.to_wire()

    async def _handle_video(self, request: GenerationRequest, provider: Provider) -> Dict[str, Any]:
        result = await provider.generate_video(
            request.model_id,
            request.payload.prompt or "",
            VideoOptions.from_config(request.payload.config),
            self._progress_forwarder(request),
        )
        return result.to_wire()
