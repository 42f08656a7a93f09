"""Chat API routes: send messages, stream events over SSE, answer permission prompts."""

import json
import queue

from flask import Blueprint, Response, current_app, jsonify, request

from gateway.permissions import PermissionResponse
from gateway.schema import ModelConfig, ProviderConfig
from providers.registry import get_codec
from web.app import SessionState

chat_bp = Blueprint("chat", __name__)


@chat_bp.route("/chat/send", methods=["POST"])
def send_message():
    """Send a user message and start a chat turn."""
    data = request.get_json(silent=True) or {}
    message = (data.get("message") or "").strip()
    session_id = data.get("session_id")

    if not message:
        return jsonify({"error": "No message provided"}), 400

    sessions = current_app.config["sessions"]
    session = sessions.get(session_id) if session_id else None
    if session is None:
        try:
            model = model_from_payload(data.get("model"))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        session = SessionState(
            current_app.config["gateway_context"],
            current_app.config["runner"],
            model,
            session_id=session_id,
            system_prompt=data.get("system_prompt") or "",
        )
        sessions[session.id] = session

    if session.is_running:
        return jsonify({"error": "A turn is already in progress"}), 409

    session.send_message(message)
    return jsonify({"session_id": session.id, "status": "processing"})


@chat_bp.route("/chat/stream/<session_id>")
def stream_response(session_id):
    """SSE endpoint streaming chat events as they happen."""
    session = current_app.config["sessions"].get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404

    def generate():
        while True:
            try:
                event = session.stream_queue.get(timeout=30)
            except queue.Empty:
                yield f"data: {json.dumps({'type': 'keepalive'})}\n\n"
                if not session.is_running:
                    break
                continue
            yield f"data: {json.dumps(event)}\n\n"
            if event.get("type") in ("done", "error"):
                break

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@chat_bp.route("/chat/history/<session_id>")
def get_history(session_id):
    """Get conversation history for a session."""
    session = current_app.config["sessions"].get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({
        "session_id": session.id,
        "model": session.session.model.model,
        "is_running": session.is_running,
        "history": [m.to_dict() for m in session.session.history],
    })


@chat_bp.route("/permissions/<request_id>", methods=["POST"])
def answer_permission(request_id):
    """Deliver the user's decision for a pending sandbox permission request."""
    data = request.get_json(silent=True) or {}
    approved = data.get("approved")
    if not isinstance(approved, bool):
        return jsonify({"error": "approved must be a boolean"}), 400
    response = PermissionResponse(approved=approved, remember=bool(data.get("remember", False)))

    permissions = current_app.config["gateway_context"].permissions
    if not permissions.set_response(request_id, response):
        return jsonify({"error": "No pending permission request"}), 404
    return jsonify({"request_id": request_id, "status": "delivered"})


def model_from_payload(raw) -> ModelConfig:
    """Build a ModelConfig from the `model` object of a send request."""
    if not isinstance(raw, dict):
        raise ValueError("model is required")
    name = raw.get("model")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("model.model must be a non-empty string")
    provider = raw.get("provider")
    if not isinstance(provider, dict):
        raise ValueError("model.provider is required")
    provider_type = provider.get("type")
    if not isinstance(provider_type, str) or get_codec(provider_type) is None:
        raise ValueError(f"unsupported provider type: {provider_type}")
    try:
        temperature = float(raw.get("temperature", 0.0) or 0.0)
        max_tokens = int(raw.get("max_tokens", 0) or 0)
    except (TypeError, ValueError):
        raise ValueError("model.temperature and model.max_tokens must be numbers")
    return ModelConfig(
        model=name.strip(),
        provider=ProviderConfig(
            type=provider_type,
            base_url=str(provider.get("base_url") or ""),
            api_key=str(provider.get("api_key") or ""),
            name=str(provider.get("name") or ""),
        ),
        temperature=temperature,
        max_tokens=max_tokens,
    )
