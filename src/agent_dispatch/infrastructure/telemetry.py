"""OpenTelemetry tracing for agent-dispatch.

Tracing is off unless ``DispatchConfig.telemetry.enabled`` is set.  While it
is off every public function returns no-op objects, so dispatch code can open
spans unconditionally.

Usage in application code::

    from agent_dispatch.infrastructure.telemetry import get_tracer

    tracer = get_tracer()
    with tracer.start_as_current_span("dispatch.sync") as span:
        span.set_attribute("dispatch.session_id", session_id)
        ...

Configuration (``DispatchConfig.telemetry``)::

    "telemetry": {
        "enabled": true,
        "exporter": "console",       # "none" | "console" | "otlp"
        "service_name": "my-app",
        "otlp_endpoint": ""          # required when exporter="otlp"
    }
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agent_dispatch.config import DispatchConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# No-op shim (used while telemetry is disabled)
# ---------------------------------------------------------------------------

class _NoOpSpan:
    """Minimal no-op span that satisfies the context-manager protocol."""

    def set_attribute(self, key: str, value: Any) -> None:  # noqa: ARG002
        pass

    def record_exception(self, exc: BaseException) -> None:  # noqa: ARG002
        pass

    def set_status(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_NoOpSpan":
        return self

    def __exit__(self, *args: Any) -> None:
        pass


class _NoOpTracer:
    def start_as_current_span(self, name: str, **kwargs: Any) -> _NoOpSpan:  # noqa: ARG002
        return _NoOpSpan()


_NOOP_TRACER = _NoOpTracer()

_tracer: Any = None          # real opentelemetry.trace.Tracer once initialised


def setup_telemetry(config: "DispatchConfig") -> None:
    """Initialise the tracer provider from ``config.telemetry``.

    Safe to call multiple times; later calls are no-ops once a tracer is set
    up.  A disabled or missing telemetry section leaves the no-op tracer in place.
    """
    global _tracer  # noqa: PLW0603

    if _tracer is not None:
        return

    tel_cfg = getattr(config, "telemetry", None)
    if tel_cfg is None or not getattr(tel_cfg, "enabled", False):
        logger.debug("Telemetry disabled or not configured; using no-op tracer")
        return

    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: tel_cfg.service_name}))
    exporter_name = tel_cfg.exporter

    if exporter_name == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Telemetry: console exporter configured (service=%s)", tel_cfg.service_name)
    elif exporter_name == "otlp":
        if not tel_cfg.otlp_endpoint:
            logger.warning("Telemetry exporter='otlp' but otlp_endpoint is not set; traces dropped")
        else:
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            except ImportError:
                logger.warning(
                    "OTLP exporter requested but 'opentelemetry-exporter-otlp-proto-grpc' is not installed. "
                    "Install with: pip install 'agent-dispatch[otlp]'"
                )
            else:
                provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=tel_cfg.otlp_endpoint)))
                logger.info(
                    "Telemetry: OTLP exporter configured (endpoint=%s service=%s)",
                    tel_cfg.otlp_endpoint, tel_cfg.service_name,
                )
    elif exporter_name != "none":
        logger.warning("Unknown telemetry exporter %r; no spans will be exported", exporter_name)

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("agent_dispatch")
    logger.debug("Telemetry initialised: exporter=%s service=%s", exporter_name, tel_cfg.service_name)


def get_tracer() -> Any:
    """Return the active tracer (real OTEL tracer or no-op)."""
    return _tracer if _tracer is not None else _NOOP_TRACER


def reset_for_testing() -> None:
    """Reset module state for use in tests. Not for production use."""
    global _tracer  # noqa: PLW0603
    _tracer = None
