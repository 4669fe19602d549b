from typing import Dict

from unillm.core.models_config import ProviderKind, ProviderSpec
from unillm.providers.base import END_OF_STREAM, Provider, StreamEvent
from unillm.providers.gemini import GeminiProvider
from unillm.providers.openai_compat import OpenAICompatibleProvider

PROVIDER_URLS: Dict[ProviderKind, str] = {
    ProviderKind.ALIYUN: "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
    ProviderKind.TENCENT: "https://api.lkeap.cloud.tencent.com/v1/chat/completions",
    ProviderKind.BYTEDANCE: "https://ark.cn-beijing.volces.com/api/v3/chat/completions",
    ProviderKind.DEEPSEEK: "https://api.deepseek.com/chat/completions",
    ProviderKind.SILICONFLOW: "https://api.siliconflow.cn/v1/chat/completions",
}


def create_provider(spec: ProviderSpec) -> Provider:
    """Build the adapter for one credential pool's provider."""
    if spec.kind is ProviderKind.GOOGLE:
        return GeminiProvider()
    if spec.kind is ProviderKind.CUSTOM:
        if not spec.url:
            raise ValueError("custom provider requires a url")
        # caller-supplied URL is used verbatim
        return OpenAICompatibleProvider(ProviderKind.CUSTOM.value, spec.url)
    return OpenAICompatibleProvider(spec.kind.value, PROVIDER_URLS[spec.kind])


__all__ = [
    "END_OF_STREAM",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "PROVIDER_URLS",
    "Provider",
    "StreamEvent",
    "create_provider",
]
