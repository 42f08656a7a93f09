"""Per-session telemetry: JSONL records plus optional OpenTelemetry spans.

Every provider cycle, tool dispatch and finished turn becomes one metric.
Metrics are kept in memory for `summary_dict`, appended to
`<log_dir>/<session_id>.jsonl`, and mirrored as spans when tracing is on.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
import json
import logging
import os
import threading
import time
from typing import Any

from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from gateway.config import TelemetryConfig

logger = logging.getLogger(__name__)

PROVIDER_CALL = "provider_call"
TOOL_CALL = "tool_call"
TURN = "turn"


@dataclass
class ProviderCallMetric:
    provider_type: str
    model: str
    latency_ms: float
    finish_reason: str = ""
    error: str | None = None


@dataclass
class ToolCallMetric:
    tool_name: str
    source: str
    duration_ms: float
    server: str | None = None
    error: str | None = None


@dataclass
class TurnMetric:
    cycles: int
    states: list[str]
    truncated: bool
    duration_ms: float


def _span_value(value: Any) -> Any:
    # Span attributes only take scalars or homogeneous sequences.
    if isinstance(value, list):
        return ",".join(str(v) for v in value)
    return value


class Telemetry:
    """Collects metrics for one chat session. Disabled instances record nothing."""

    def __init__(self, config: TelemetryConfig, session_id: str):
        self.config = config
        self.session_id = session_id
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._metrics: dict[str, list[Any]] = {PROVIDER_CALL: [], TOOL_CALL: [], TURN: []}
        self._jsonl_path: str | None = None
        self._tracer = None

        if config.enabled:
            os.makedirs(config.log_dir, exist_ok=True)
            self._jsonl_path = os.path.join(config.log_dir, f"{session_id}.jsonl")
            if config.otel_enabled:
                self._tracer = self._build_tracer()

    def record_provider_call(
        self,
        provider_type: str,
        model: str,
        latency_ms: float,
        finish_reason: str = "",
        error: str | None = None,
    ) -> None:
        self._record(PROVIDER_CALL, ProviderCallMetric(provider_type, model, latency_ms, finish_reason, error))

    def record_tool_call(
        self,
        tool_name: str,
        source: str,
        duration_ms: float,
        server: str | None = None,
        error: str | None = None,
    ) -> None:
        """MCP failures land here with the server that failed."""
        self._record(TOOL_CALL, ToolCallMetric(tool_name, source, duration_ms, server, error))

    def record_turn(self, cycles: int, states: list[str], truncated: bool, duration_ms: float) -> None:
        self._record(TURN, TurnMetric(cycles, list(states), truncated, duration_ms))

    def summary_dict(self) -> dict[str, Any]:
        with self._lock:
            provider_calls = list(self._metrics[PROVIDER_CALL])
            tool_calls = list(self._metrics[TOOL_CALL])
            turns = len(self._metrics[TURN])
        return {
            "session_id": self.session_id,
            "turns": turns,
            "provider_calls": [asdict(m) for m in provider_calls],
            "tool_calls": [asdict(m) for m in tool_calls],
            "provider_errors": len([m for m in provider_calls if m.error]),
            "tool_errors": len([m for m in tool_calls if m.error]),
            "total_duration_ms": (time.monotonic() - self._started) * 1000,
        }

    def _record(self, kind: str, metric: Any) -> None:
        if not self.config.enabled:
            return
        fields = asdict(metric)
        line = json.dumps(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "session_id": self.session_id,
                "event": kind,
                **fields,
            },
            default=str,
        )
        with self._lock:
            self._metrics[kind].append(metric)
            if self._jsonl_path:
                with open(self._jsonl_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")

        if self._tracer is not None:
            with self._tracer.start_as_current_span(kind) as span:
                span.set_attribute("session_id", self.session_id)
                for key, value in fields.items():
                    if value is not None:
                        span.set_attribute(key, _span_value(value))

    def _build_tracer(self):
        provider = TracerProvider(resource=Resource.create({"service.name": self.config.otel_service_name}))
        if self.config.otel_endpoint:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=self.config.otel_endpoint)))
        logger.info("OpenTelemetry tracing enabled for session %s", self.session_id)
        return provider.get_tracer(__name__)
