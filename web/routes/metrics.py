"""Telemetry routes: per-session summaries and gateway-wide error counts."""

from flask import Blueprint, current_app, jsonify

metrics_bp = Blueprint("metrics", __name__)


def _summaries():
    return {
        sid: state.session.telemetry.summary_dict()
        for sid, state in current_app.config["sessions"].items()
    }


@metrics_bp.route("/metrics", methods=["GET"])
def get_metrics():
    telemetry_config = current_app.config["gateway_config"].telemetry
    if not telemetry_config.enabled:
        return jsonify({"enabled": False, "sessions": []})

    summaries = _summaries()
    return jsonify({
        "enabled": True,
        "log_dir": telemetry_config.log_dir,
        "totals": {
            "turns": sum(s["turns"] for s in summaries.values()),
            "provider_errors": sum(s["provider_errors"] for s in summaries.values()),
            "tool_errors": sum(s["tool_errors"] for s in summaries.values()),
        },
        "sessions": [{"session_id": sid, "metrics": summary} for sid, summary in summaries.items()],
    })


@metrics_bp.route("/metrics/<session_id>", methods=["GET"])
def get_session_metrics(session_id):
    state = current_app.config["sessions"].get(session_id)
    if state is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({"session_id": session_id, "metrics": state.session.telemetry.summary_dict()})
