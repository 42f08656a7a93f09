import json
from pathlib import Path

from gateway.config import TelemetryConfig
from gateway.telemetry import Telemetry


def test_telemetry_records_events(tmp_path: Path):
    config = TelemetryConfig(
        enabled=True,
        log_dir=str(tmp_path),
        otel_enabled=False,
        otel_endpoint=None,
        otel_service_name="agent-gateway",
    )
    telemetry = Telemetry(config, session_id="sess123")

    telemetry.record_provider_call(
        provider_type="openai",
        model="gpt-4o",
        latency_ms=123.4,
        finish_reason="tool_calls",
    )
    telemetry.record_provider_call(
        provider_type="anthropic",
        model="claude-3-5-sonnet",
        latency_ms=10.0,
        error="HTTP 529",
    )
    telemetry.record_tool_call(tool_name="TodoWrite", source="control", duration_ms=1.5)
    telemetry.record_tool_call(
        tool_name="search",
        source="mcp",
        duration_ms=55.5,
        server="alpha",
        error="timed out after 30.0s",
    )
    telemetry.record_turn(cycles=2, states=["requesting", "streaming", "done"], truncated=False, duration_ms=200.0)

    summary = telemetry.summary_dict()
    assert summary["turns"] == 1
    assert summary["provider_errors"] == 1
    assert summary["tool_errors"] == 1
    assert summary["tool_calls"][1]["server"] == "alpha"

    log_path = tmp_path / "sess123.jsonl"
    assert log_path.exists()
    lines = log_path.read_text().strip().splitlines()
    assert len(lines) == 5
    records = [json.loads(line) for line in lines]
    assert [r["event"] for r in records] == ["provider_call", "provider_call", "tool_call", "tool_call", "turn"]
    assert all(r["session_id"] == "sess123" for r in records)
    assert records[3]["error"] == "timed out after 30.0s"


def test_telemetry_disabled_no_log(tmp_path: Path):
    config = TelemetryConfig(enabled=False, log_dir=str(tmp_path))
    telemetry = Telemetry(config, session_id="sess456")
    telemetry.record_provider_call(provider_type="ollama", model="llama3.2", latency_ms=1.0)
    log_path = tmp_path / "sess456.jsonl"
    assert not log_path.exists()
    assert telemetry.summary_dict()["provider_calls"] == []


def test_telemetry_otel_tracer_without_exporter(tmp_path: Path):
    config = TelemetryConfig(enabled=True, log_dir=str(tmp_path), otel_enabled=True)
    telemetry = Telemetry(config, session_id="sess789")
    telemetry.record_turn(cycles=1, states=["requesting", "streaming", "done"], truncated=False, duration_ms=5.0)
    assert (tmp_path / "sess789.jsonl").exists()
