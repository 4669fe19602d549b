class GatewayError(Exception):
    """Base class for every failure surfaced to the inbound client.

    ``status_code`` is the HTTP status the outer handler answers with and
    ``stage`` names the part of the pipeline that failed, for logs.
    """

    status_code = 500
    stage = "gateway"

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigurationError(GatewayError):
    """
    Caller/config issue (unknown model, unknown credential pool, proxy
    missing). The fix is to change the request or the config, never to retry.
    """

    status_code = 400
    stage = "dispatch"


class UnknownModelError(ConfigurationError):
    status_code = 404

    def __init__(self, model_id: str):
        super().__init__(f"Invalid model id: {model_id!r}")
        self.model_id = model_id


class UnknownCredentialPoolError(ConfigurationError):
    def __init__(self, pool_id: str):
        super().__init__(f"Invalid api_key_id: {pool_id!r}")
        self.pool_id = pool_id


class ProxyNotConfiguredError(ConfigurationError):
    def __init__(self, model_id: str):
        super().__init__(
            f"Model {model_id!r} requires a proxy but no proxyUrl is configured"
        )
        self.model_id = model_id


class UpstreamProtocolError(GatewayError):
    """The upstream answered, but not with something we can translate."""

    status_code = 502
    stage = "upstream"


class UpstreamError(UpstreamProtocolError):
    def __init__(self, status: int, body: str, *, provider: str | None = None):
        super().__init__(f"upstream returned {status}: {body}")
        self.status = status
        self.body = body
        self.provider = provider


class MalformedPayloadError(UpstreamProtocolError):
    pass


class EmptyChoicesError(UpstreamProtocolError):
    pass


class UpstreamTransportError(GatewayError):
    """Connection-level failure talking to the upstream (connect, read, reset)."""

    status_code = 502
    stage = "transport"
