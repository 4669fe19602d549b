from typing import Annotated, Any, List, Literal, Optional

from pydantic import AnyUrl, BeforeValidator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> List[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, (list, str)):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "uni-llm"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    API_PREFIX: str = "/api"
    # Reported by /api/version; Ollama clients gate features on it
    OLLAMA_VERSION: str = "0.5.7"

    HOST: str = "0.0.0.0"
    PORT: int = 12345

    MODELS_CONFIG_PATH: str = "~/.config/uni-llm/config.json"
    OPENWEBUI_LATEST_TAGS: bool = True

    UPSTREAM_TIMEOUT_SECONDS: float = 300.0
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = 10.0

    BACKEND_CORS_ORIGINS: Annotated[
        List[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> List[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    SENTRY_DSN: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()  # type: ignore
