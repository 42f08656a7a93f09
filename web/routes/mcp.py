"""MCP server management routes."""

from flask import Blueprint, current_app, jsonify, request

from gateway.config import MCPServerConfig
from gateway.exceptions import ConfigError, MCPError

mcp_bp = Blueprint("mcp", __name__)

# Upper bound for a synchronous check issued from a request thread.
CHECK_TIMEOUT_SECONDS = 60


def _manager():
    return current_app.config["gateway_context"].mcp


def _run(coro, timeout: float | None = CHECK_TIMEOUT_SECONDS):
    return current_app.config["runner"].run(coro, timeout)


@mcp_bp.route("/mcp", methods=["GET"])
def list_servers():
    """Configured servers with their last known status."""
    manager = _manager()
    try:
        configs = manager.load_config()
    except MCPError as e:
        return jsonify({"error": str(e)}), 500
    statuses = manager.get_status()
    return jsonify({
        "servers": [
            {
                "name": name,
                "config": configs[name].to_dict() if name in configs else None,
                **status.to_dict(),
            }
            for name, status in statuses.items()
        ]
    })


@mcp_bp.route("/mcp/<name>", methods=["GET"])
def get_server(name):
    manager = _manager()
    try:
        config = manager.get_server_config(name)
    except ConfigError as e:
        return jsonify({"error": str(e)}), 422
    except MCPError as e:
        return jsonify({"error": str(e)}), 404
    status = manager.get_status().get(name)
    return jsonify({"name": name, "config": config.to_dict(), **(status.to_dict() if status else {})})


@mcp_bp.route("/mcp/<name>", methods=["PUT"])
def put_server(name):
    """Create or replace a server entry."""
    try:
        config = MCPServerConfig.from_dict(request.get_json(silent=True))
    except ConfigError as e:
        return jsonify({"error": str(e)}), 400
    try:
        _run(_manager().set_server(name, config))
    except MCPError as e:
        return jsonify({"error": str(e)}), 500
    return jsonify({"name": name, "status": "saved"})


@mcp_bp.route("/mcp/<name>", methods=["DELETE"])
def delete_server(name):
    try:
        _run(_manager().delete_server(name))
    except MCPError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"name": name, "status": "deleted"})


@mcp_bp.route("/mcp/<name>/check", methods=["POST"])
def check_server(name):
    status = _run(_manager().check_server(name))
    return jsonify({"name": name, **status.to_dict()})


@mcp_bp.route("/mcp/check", methods=["POST"])
def check_all():
    statuses = _run(_manager().check_all_enabled())
    return jsonify({"servers": {name: status.to_dict() for name, status in sorted(statuses.items())}})
