"""Azure OpenAI codec: OpenAI wire format with deployment URLs and `api-key` auth."""

from gateway.schema import ChatMessage, ChatOptions
from providers.base import ProviderRequest, WireCodec
from providers.openai import OpenAICodec

API_VERSION = "2024-02-15-preview"


class AzureOpenAICodec(OpenAICodec):
    provider_type = "azure-openai"
    default_base_url = ""

    def get_base_url(self, base_url: str) -> str:
        return WireCodec.get_base_url(self, base_url)

    def build_chat_request(
        self,
        model: str,
        messages: list[ChatMessage],
        options: ChatOptions,
    ) -> ProviderRequest:
        # The deployment in the URL selects the model.
        base = self.get_base_url(options.base_url)
        return ProviderRequest(
            method="POST",
            url=f"{base}/deployments/{model}/chat/completions?api-version={API_VERSION}",
            headers=self._headers(options.api_key),
            body=self._build_body(messages, options),
        )

    def _headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key
        return headers

    def build_models_request(self, base_url: str, api_key: str) -> ProviderRequest:
        return ProviderRequest(
            method="GET",
            url=f"{self.get_base_url(base_url)}/deployments?api-version={API_VERSION}",
            headers=self._headers(api_key),
        )
