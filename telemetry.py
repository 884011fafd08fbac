#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Configures a tracer provider, instruments aiohttp client requests, logging
and sqlite3, and provides the ``trace_span`` decorator used on the fetch,
discovery and validation entry points.

Environment variables:
  - OTEL_SERVICE_NAME (default: infodash)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
import functools
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional
import asyncio

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("InfoDash.telemetry")


def _instrument(name: str, instrumentor) -> None:
    try:
        instrumentor.instrument()
    except Exception as e:  # instrumentation is optional at runtime
        _logger.warning("Telemetry: %s instrumentation unavailable: %s", name, e)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "infodash")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)
            trace.set_tracer_provider(provider)

        console = os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
        if console:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        _logger.info("Telemetry initialized (service=%s, console_export=%s)", svc, console)
        _provider = provider

        _instrument("aiohttp", AioHttpClientInstrumentor())
        # Adds otelTraceID / otelSpanID to log records without changing the format
        _instrument("logging", LoggingInstrumentor())
        _instrument("sqlite3", SQLite3Instrumentor())

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    if _provider is not None:
        # Flushes any BatchSpanProcessor
        _provider.shutdown()


def get_tracer(name: str = "infodash"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)

def _apply(span, name: str, attrs_fn: Optional[Callable], /, *args, **kwargs) -> None:
    """Copy the mapping returned by attrs_fn onto the span, skipping None values."""
    if not callable(attrs_fn):
        return
    try:
        for key, value in (attrs_fn(*args, **kwargs) or {}).items():
            if value is not None:
                span.set_attribute(key, value)
    except Exception as e:  # attributes must never break the call
        _logger.debug("Telemetry: could not set span attributes on %s: %s", name, e)


@contextmanager
def _span(tracer, name: str, static_attrs: Optional[Dict[str, Any]]):
    with tracer.start_as_current_span(
        name,
        attributes=dict(static_attrs or {}),
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
    attr_from_result: Optional[Callable] = None,
):
    """Wrap each call of a sync or async function in a span.

    ``attr_from_args`` receives the call's arguments and ``attr_from_result``
    its return value; both return a dict of span attributes. Exceptions are
    recorded on the span and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "infodash")

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _span(tracer, name, static_attrs) as span:
                    _apply(span, name, attr_from_args, *args, **kwargs)
                    result = await func(*args, **kwargs)
                    _apply(span, name, attr_from_result, result)
                    return result

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with _span(tracer, name, static_attrs) as span:
                _apply(span, name, attr_from_args, *args, **kwargs)
                result = func(*args, **kwargs)
                _apply(span, name, attr_from_result, result)
                return result

        return _sync_wrapper

    return _decorator
