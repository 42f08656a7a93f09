"""Models API route: list the models a provider exposes."""

from flask import Blueprint, current_app, jsonify, request

from gateway.exceptions import GatewayError
from providers.registry import available_provider_types, get_codec

models_bp = Blueprint("models", __name__)

FETCH_TIMEOUT_SECONDS = 30


@models_bp.route("/providers", methods=["GET"])
def list_provider_types():
    return jsonify({"providers": available_provider_types()})


@models_bp.route("/providers/<provider_type>/models", methods=["GET"])
def list_models(provider_type):
    """Fetch a provider's model list; fixed catalogs are returned without a network call."""
    codec = get_codec(provider_type)
    if codec is None:
        return jsonify({"error": f"unsupported provider type: {provider_type}", "models": []}), 404

    base_url = request.args.get("base_url", "")
    # Keys travel in a header so they stay out of access logs.
    api_key = request.headers.get("X-Provider-Key", "")

    context = current_app.config["gateway_context"]
    runner = current_app.config["runner"]
    try:
        models = runner.run(
            codec.fetch_models(context.provider_client, base_url, api_key),
            FETCH_TIMEOUT_SECONDS,
        )
    except GatewayError as e:
        return jsonify({"error": str(e), "models": []}), 502
    return jsonify({"provider": provider_type, "models": [m.to_dict() for m in models]})
