from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from unillm.core.errors import ProxyNotConfiguredError
from unillm.providers import Provider, create_provider
from unillm.services.registry import ProviderRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class Route:
    model_id: str
    model_name: str
    provider: Provider
    api_key: str
    client: httpx.AsyncClient
    proxied: bool = False


class Dispatcher:
    """Pick provider adapter, credential and network path for a model id."""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: httpx.AsyncClient,
        proxy_client: Optional[httpx.AsyncClient] = None,
    ):
        self.registry = registry
        self.client = client
        self.proxy_client = proxy_client

    def resolve(self, model_id: str) -> Route:
        selection = self.registry.select(model_id)
        credential = selection.credential
        client = self.client
        if credential.needs_proxy:
            if self.proxy_client is None:
                raise ProxyNotConfiguredError(model_id)
            logger.info("start_proxy", model_id=model_id, model_name=selection.model_name)
            client = self.proxy_client
        return Route(
            model_id=model_id,
            model_name=selection.model_name,
            provider=create_provider(credential.provider),
            api_key=credential.secret,
            client=client,
            proxied=credential.needs_proxy,
        )
