import httpx
import pytest

from unillm.core.models_config import ModelsConfig
from unillm.services.registry import ProviderRegistry
from unillm.tests.utils.utils import SAMPLE_CONFIG


@pytest.fixture
def models_config() -> ModelsConfig:
    return ModelsConfig.model_validate(SAMPLE_CONFIG)


@pytest.fixture
def registry(models_config: ModelsConfig) -> ProviderRegistry:
    return ProviderRegistry.from_config(models_config)


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient()
