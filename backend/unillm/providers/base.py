from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from unillm.schemas import ChatRequest, Role, TokenUsage


@dataclass(frozen=True)
class StreamEvent:
    """One upstream event, normalised across provider schemas.

    ``reasoning`` is the side-channel thinking text (``reasoning_content``)
    some providers send instead of inline ``<think>`` markers.
    """

    content: str = ""
    reasoning: Optional[str] = None
    role: Role = Role.ASSISTANT
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    end_of_stream: bool = False


END_OF_STREAM = StreamEvent(end_of_stream=True)


class Provider(ABC):
    """Adapter between the canonical protocol and one upstream wire schema."""

    name: str = "provider"
    # False for providers whose streams have no thinking phase to bracket;
    # the transcoder then runs its single-phase chatting machine.
    thinking_markers: bool = True

    @abstractmethod
    def endpoint(self, model_name: str, stream: bool) -> str:
        ...

    @abstractmethod
    def build_body(self, req: ChatRequest, model_name: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def parse_stream_event(self, data: str) -> StreamEvent:
        """Parse the payload of one ``data: `` line."""

    @abstractmethod
    def parse_response(self, body: bytes) -> StreamEvent:
        """Parse a complete non-streaming response body."""

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def query_params(self, api_key: str, stream: bool) -> Dict[str, str]:
        return {}

    def headers(self, api_key: str, stream: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # ask for SSE only when the caller wants a stream
        if stream:
            headers["Accept"] = "text/event-stream"
        headers.update(self.auth_headers(api_key))
        return headers

    def build_request(
        self,
        client: httpx.AsyncClient,
        req: ChatRequest,
        model_name: str,
        api_key: str,
    ) -> httpx.Request:
        body = self.build_body(req, model_name)
        # options override fixed fields (temperature, top_p, ...)
        if req.options:
            body.update(req.options)
        params = self.query_params(api_key, req.stream)
        return client.build_request(
            "POST",
            self.endpoint(model_name, req.stream),
            headers=self.headers(api_key, req.stream),
            params=params or None,
            json=body,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
