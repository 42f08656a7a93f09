"""Sandbox API routes."""

from flask import Blueprint, current_app, jsonify, request

sandbox_bp = Blueprint("sandbox", __name__)


def _sandbox():
    return current_app.config["gateway_context"].sandbox


@sandbox_bp.route("/sandbox", methods=["GET"])
def get_sandbox():
    sandbox = _sandbox()
    return jsonify({
        "enabled": sandbox.is_enabled(),
        "paths": [p.to_dict() for p in sandbox.all_paths()],
    })


@sandbox_bp.route("/sandbox", methods=["POST"])
def update_sandbox():
    """Toggle the sandbox and add or remove allow-listed paths."""
    data = request.get_json(silent=True) or {}
    sandbox = _sandbox()

    enabled = data.get("enabled")
    if enabled is not None:
        if not isinstance(enabled, bool):
            return jsonify({"error": "enabled must be a boolean"}), 400
        sandbox.set_enabled(enabled)

    for key in ("add", "remove"):
        paths = data.get(key) or []
        if not isinstance(paths, list) or not all(isinstance(p, str) and p.strip() for p in paths):
            return jsonify({"error": f"{key} must be a list of non-empty strings"}), 400

    for path in data.get("add") or []:
        sandbox.add_path(path)
    for path in data.get("remove") or []:
        sandbox.remove_path(path)
    return get_sandbox()


@sandbox_bp.route("/sandbox/check", methods=["POST"])
def check_command():
    """Evaluate a command against the allow-list without running it."""
    data = request.get_json(silent=True) or {}
    command = data.get("command")
    if not isinstance(command, str) or not command.strip():
        return jsonify({"error": "command is required"}), 400
    allowed, blocked = _sandbox().check_command_permission(command)
    return jsonify({"allowed": allowed, "blocked_paths": blocked})
