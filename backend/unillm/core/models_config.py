"""The JSON document describing upstream credentials and exposed models.

Shape::

    {
      "proxyUrl": "http://127.0.0.1:11111",
      "apiKeys": {
        "aliyun": {"apiKey": "sk-...", "provider": "aliyun"},
        "mine": {"apiKey": ["k1", "k2"], "provider": {"custom": "https://host/v1/chat/completions"}},
        "google": {"apiKey": "...", "provider": "google", "needProxy": true}
      },
      "models": {
        "aliyun-r1": {"name": "deepseek-r1", "apiKeyId": "aliyun"}
      }
    }

``apiKey`` may be a single secret or a list (a credential pool); a single
secret is a pool of size one.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

logger = structlog.get_logger()

PLACEHOLDER_KEY = "[YOUR-API-KEY]"


class ProviderKind(str, Enum):
    ALIYUN = "aliyun"
    TENCENT = "tencent"
    BYTEDANCE = "bytedance"
    DEEPSEEK = "deepseek"
    SILICONFLOW = "siliconflow"
    GOOGLE = "google"
    CUSTOM = "custom"


class ProviderSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ProviderKind
    # only set for ProviderKind.CUSTOM
    url: Optional[str] = None


class ApiKeyInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: List[str] = Field(alias="apiKey")
    provider: ProviderSpec
    need_proxy: bool = Field(default=False, alias="needProxy")

    @field_validator("api_key", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("api_key")
    @classmethod
    def _not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("apiKey must contain at least one key")
        return v

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, v: Any) -> Any:
        if isinstance(v, ProviderSpec):
            return v
        if isinstance(v, str):
            kind = v.lower()
            if kind == ProviderKind.CUSTOM.value:
                raise ValueError('custom providers are written as {"custom": "<url>"}')
            return {"kind": kind}
        if isinstance(v, dict):
            if "kind" in v:
                return v
            if len(v) == 1:
                key, url = next(iter(v.items()))
                if str(key).lower() == ProviderKind.CUSTOM.value and isinstance(url, str):
                    return {"kind": ProviderKind.CUSTOM, "url": url}
        raise ValueError(f"unrecognised provider: {v!r}")

    @field_serializer("api_key")
    def _dump_api_key(self, v: List[str]) -> Any:
        return v[0] if len(v) == 1 else v

    @field_serializer("provider")
    def _dump_provider(self, v: ProviderSpec) -> Any:
        if v.kind is ProviderKind.CUSTOM:
            return {"custom": v.url}
        return v.kind.value


class ModelInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # model name sent upstream
    name: str
    api_key_id: str = Field(alias="apiKeyId")


class ModelsConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proxy_url: Optional[str] = Field(default=None, alias="proxyUrl")
    api_keys: Dict[str, ApiKeyInfo] = Field(default_factory=dict, alias="apiKeys")
    models: Dict[str, ModelInfo] = Field(default_factory=dict)

    def with_latest_tags(self) -> "ModelsConfig":
        """Also expose every untagged model id as ``<id>:latest``.

        Open WebUI appends ``:latest`` to model names that carry no tag.
        """
        models = dict(self.models)
        for model_id, info in self.models.items():
            if ":" not in model_id:
                models.setdefault(f"{model_id}:latest", info)
        return self.model_copy(update={"models": models})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def _key(provider: str, need_proxy: bool = False) -> ApiKeyInfo:
    return ApiKeyInfo(api_key=[PLACEHOLDER_KEY], provider=provider, need_proxy=need_proxy)


def default_models_config() -> ModelsConfig:
    """Template written out on first start so users have something to edit."""
    return ModelsConfig(
        proxy_url="http://127.0.0.1:11111",
        api_keys={
            "aliyun": _key("aliyun"),
            "bytedance": _key("bytedance"),
            "tencent": _key("tencent"),
            "deepseek": _key("deepseek"),
            "siliconflow": _key("siliconflow"),
            "google": _key("google", need_proxy=True),
        },
        models={
            "aliyun-r1": ModelInfo(name="deepseek-r1", api_key_id="aliyun"),
            "aliyun-qwen-max-latest": ModelInfo(name="qwen-max-latest", api_key_id="aliyun"),
            "bytedance-r1": ModelInfo(name="deepseek-r1-250120", api_key_id="bytedance"),
            "tencent-r1": ModelInfo(name="deepseek-r1", api_key_id="tencent"),
            "deepseek-r1": ModelInfo(name="deepseek-reasoner", api_key_id="deepseek"),
            "siliconflow-r1": ModelInfo(name="deepseek-ai/DeepSeek-R1", api_key_id="siliconflow"),
            "gemini-2.0-flash": ModelInfo(name="gemini-2.0-flash", api_key_id="google"),
            "gemini-2.0-flash-thinking-exp": ModelInfo(
                name="gemini-2.0-flash-thinking-exp", api_key_id="google"
            ),
        },
    )


def load_models_config(path: str | Path) -> ModelsConfig:
    """Read the models document, writing the default template if it is missing."""
    path = Path(path).expanduser()
    if not path.exists():
        config = default_models_config()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config.to_json(), encoding="utf-8")
        logger.warning("models_config_created", path=str(path))
        return config
    config = ModelsConfig.model_validate_json(path.read_text(encoding="utf-8"))
    logger.info(
        "models_config_loaded",
        path=str(path),
        models=len(config.models),
        credential_pools=len(config.api_keys),
    )
    return config
