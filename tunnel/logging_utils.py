"""
Structured event logging for the tunnel.

Every lifecycle event (request received/completed/failed, poll failures,
outbound HTTP calls) is emitted as one record on stdout, either as a JSON
object or as a single readable line.

Environment variables:
- LOG_LEVEL: DEBUG, INFO, WARNING or ERROR [default: INFO]
- LOG_JSON: 1 for JSON lines, 0 for readable lines [default: 0]
- LOG_HTTP_BODY: 1 to include HTTP request/response bodies [default: 0]
- LOG_HTTP_MAXLEN: body length kept before truncation [default: 2000]
"""

import json
import logging
import os
import socket
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "0") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

REDACTED = "***REDACTED***"
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "api-key", "token", "cookie"})

# "prod" / "local"; stamped on every record once the config is loaded
TUNNEL_ENV: Optional[str] = None


def set_tunnel_env(env: str) -> None:
    global TUNNEL_ENV
    TUNNEL_ENV = env


def redact_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in (headers or {}).items()
    }


def clip_body(body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
    if body is None:
        return None
    text = body if isinstance(body, str) else str(body)
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}... (truncated, {len(text)} total chars)"


class Timer:
    """Wall-clock stopwatch; stop() may be called more than once."""

    def __init__(self):
        self.start = time.monotonic()
        self.elapsed_ms = 0.0

    def stop(self) -> float:
        self.elapsed_ms = (time.monotonic() - self.start) * 1000
        return self.elapsed_ms


@contextmanager
def timer() -> Iterator[Timer]:
    t = Timer()
    try:
        yield t
    finally:
        t.stop()


class RequestContext:
    """Lifecycle handle for one generation request, yielded by request_context()."""

    def __init__(self, logger: "StructuredLogger", request_id: str, request_type: str):
        self.logger = logger
        self.request_id = request_id
        self.request_type = request_type
        self._clock = Timer()

    def milestone(self, event: str, **details) -> None:
        self.logger.info(
            event,
            request_id=self.request_id,
            duration_ms=self._clock.stop(),
            request_type=self.request_type,
            **details,
        )

    def error(self, event: str, error: str, **details) -> None:
        stack = traceback.format_exc()
        self.logger.error(
            event,
            request_id=self.request_id,
            duration_ms=self._clock.stop(),
            request_type=self.request_type,
            error=error,
            stack_trace=None if stack.startswith("NoneType: None") else stack,
            **details,
        )


class StructuredLogger:
    """
    Event logger writing one record per call to stdout.

    Records carry ts, level, event, env and hostname, plus request_id,
    duration_ms, error and stack_trace when given; any other keyword
    arguments are grouped under "details".
    """

    def __init__(self, name: str = "mindstudio-tunnel"):
        level = getattr(logging, LOG_LEVEL, logging.INFO)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if LOG_JSON else PrettyFormatter())
        self.logger.addHandler(handler)

    def log(
        self,
        level: str,
        event: str,
        request_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        stack_trace: Optional[str] = None,
        **details
    ):
        record: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "env": TUNNEL_ENV,
            "hostname": HOSTNAME,
        }
        optional = {
            "request_id": request_id,
            "duration_ms": round(duration_ms, 2) if duration_ms is not None else None,
            "error": error,
            "stack_trace": stack_trace,
            "details": details,
        }
        record.update({key: value for key, value in optional.items() if value})

        numeric_level = getattr(logging, level.upper(), logging.INFO)
        self.logger.log(numeric_level, event, extra={"structured": record})

    def debug(self, event: str, **kwargs):
        self.log("DEBUG", event, **kwargs)

    def info(self, event: str, **kwargs):
        self.log("INFO", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.log("WARNING", event, **kwargs)

    def error(self, event: str, **kwargs):
        self.log("ERROR", event, **kwargs)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        call_id: str,
        timeout: Optional[float] = None,
        headers: Optional[Mapping[str, str]] = None,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """One outbound HTTP call. Failures log at ERROR; successes at DEBUG."""
        details: Dict[str, Any] = {"service": service, "method": method, "url": url, "call_id": call_id}
        if timeout is not None:
            details["timeout"] = timeout
        if headers:
            details["headers"] = redact_headers(headers)
        if status_code is not None:
            details["status_code"] = status_code
        if LOG_HTTP_BODY:
            for key, body in (("request_body", request_body), ("response_body", response_body)):
                if body is not None:
                    details[key] = clip_body(body)

        if error:
            self.error("http_out_error", duration_ms=duration_ms, error=error, **details)
        else:
            self.debug("http_out", duration_ms=duration_ms, **details)

    @contextmanager
    def request_context(self, request_id: str, request_type: str, **initial_details) -> Iterator[RequestContext]:
        """
        Track one generation request:

            with logger.request_context("req-1", "llm_chat", model="llama3") as ctx:
                ctx.milestone("request_completed")

        Logs request_received on entry; an exception escaping the block is
        logged as request_crashed and re-raised.
        """
        ctx = RequestContext(self, request_id, request_type)
        self.info("request_received", request_id=request_id, request_type=request_type, **initial_details)
        try:
            yield ctx
        except Exception as e:
            ctx.error("request_crashed", error=str(e))
            raise


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        structured = getattr(record, "structured", None)
        if structured is not None:
            return json.dumps(structured, default=str)
        plain = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            plain["exception"] = self.formatException(record.exc_info)
        return json.dumps(plain)


class PrettyFormatter(logging.Formatter):
    """
    Single-line rendering:

        2024-05-01 12:00:00 WARNING poll_failed req=abcdef12 consecutive_failures=2 | error text
    """

    def format(self, record: logging.LogRecord) -> str:
        data = getattr(record, "structured", None)
        if data is None:
            return super().format(record)

        line = [data.get("ts", "")[:19].replace("T", " "), f"{data.get('level', 'INFO'):<7}", data.get("event", "")]
        if data.get("request_id"):
            line.append(f"req={data['request_id'][:8]}")
        if "duration_ms" in data:
            line.append(f"{data['duration_ms']}ms")
        line.extend(f"{key}={value}" for key, value in (data.get("details") or {}).items())
        text = " ".join(line)
        if data.get("error"):
            text += f" | {data['error']}"
        return text


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(env: Optional[str] = None) -> StructuredLogger:
    """Configure stdlib logging for module loggers and return the event logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if env:
        set_tunnel_env(env)
    logger = get_logger()
    logger.debug(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        hostname=HOSTNAME,
    )
    return logger
