"""Provider type to wire codec lookup."""

from providers.anthropic import AnthropicCodec
from providers.azure import AzureOpenAICodec
from providers.base import WireCodec
from providers.gemini import GeminiCodec
from providers.ollama import OllamaCodec
from providers.openai import OpenAICodec

_openai = OpenAICodec()
_anthropic = AnthropicCodec()

_CODECS: dict[str, WireCodec] = {
    "openai": _openai,
    "openai-response": _openai,
    "mistral": _openai,
    "new-api": _openai,
    "gateway": _openai,
    "vertexai": _openai,
    "aws-bedrock": _openai,
    "anthropic": _anthropic,
    "vertex-anthropic": _anthropic,
    "gemini": GeminiCodec(),
    "ollama": OllamaCodec(),
    "azure-openai": AzureOpenAICodec(),
}


def get_codec(provider_type: str) -> WireCodec | None:
    """Return the codec for a provider type, or None if unsupported."""
    return _CODECS.get(provider_type)


def register_codec(provider_type: str, codec: WireCodec) -> None:
    """Add or replace the codec for a provider type."""
    _CODECS[provider_type] = codec


def available_provider_types() -> list[str]:
    return sorted(_CODECS)
