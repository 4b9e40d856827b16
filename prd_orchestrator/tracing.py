"""
OpenTelemetry tracing for orchestrator runs
===========================================
Spans:
  task:<id>          — one task from routing to final outcome
  attempt:<model>    — one backend call plus its quality-gate check

With tracing disabled the OpenTelemetry API's own no-op tracer is used.

Usage:
    from prd_orchestrator.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace

logger = logging.getLogger("prd_orchestrator.tracing")

_tracer: Optional[trace.Tracer] = None
_provider = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "prd-orchestrator"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Set up the global TracerProvider. Safe to call more than once."""
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer("prd_orchestrator")
        return

    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

    provider = TracerProvider(
        resource=Resource.create({"service.name": cfg.service_name}),
        sampler=TraceIdRatioBased(cfg.sample_rate),
    )
    if cfg.otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(
                "OTLP exporter not installed, tracing disabled. "
                "Run: pip install -e '.[tracing]'"
            )
            _tracer = trace.get_tracer("prd_orchestrator")
            return
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
        )
        logger.info("OTEL tracing → %s", cfg.otlp_endpoint)
    else:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console")

    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("prd_orchestrator")
    return _tracer


@contextmanager
def traced_task(task_id: str, tier: str, model: str) -> Iterator:
    with get_tracer().start_as_current_span(f"task:{task_id}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("task.tier", tier)
        span.set_attribute("task.model", model)
        yield span


@contextmanager
def traced_attempt(task_id: str, model: str, attempt_number: int) -> Iterator:
    with get_tracer().start_as_current_span(f"attempt:{model}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("llm.model", model)
        span.set_attribute("attempt.number", attempt_number)
        yield span
