import json
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from unillm.core.errors import EmptyChoicesError, MalformedPayloadError
from unillm.providers.base import END_OF_STREAM, Provider, StreamEvent
from unillm.schemas import ChatMessage, ChatRequest, Role, TokenUsage

DONE_SENTINEL = "[DONE]"


# Upstream (OpenAI chat.completions) response subset
class OpenAIUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class OpenAIDelta(BaseModel):
    role: Role = Role.ASSISTANT
    content: str = ""
    reasoning_content: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("reasoning_content", "reasoning"),
    )

    # continuation events send role/content as null or leave them out
    @field_validator("role", mode="before")
    @classmethod
    def _default_role(cls, v: Any) -> Any:
        return Role.ASSISTANT if v is None else v

    @field_validator("content", mode="before")
    @classmethod
    def _null_content(cls, v: Any) -> Any:
        return "" if v is None else v


class OpenAIChoice(BaseModel):
    # `delta` when streaming, `message` otherwise
    delta: OpenAIDelta = Field(
        default_factory=OpenAIDelta,
        validation_alias=AliasChoices("delta", "message"),
    )
    finish_reason: Optional[str] = None


class OpenAIChunk(BaseModel):
    choices: List[OpenAIChoice] = Field(default_factory=list)
    usage: Optional[OpenAIUsage] = None


def _to_event(chunk: OpenAIChunk) -> StreamEvent:
    choice = chunk.choices[0]
    usage = None
    if chunk.usage is not None:
        usage = TokenUsage(**chunk.usage.model_dump())
    return StreamEvent(
        content=choice.delta.content,
        reasoning=choice.delta.reasoning_content,
        role=choice.delta.role,
        usage=usage,
        finish_reason=choice.finish_reason,
    )


def _message_payload(msg: ChatMessage) -> Dict[str, Any]:
    payload = msg.model_dump(mode="json", exclude_none=True)
    # Ollama sends tool arguments as an object, OpenAI expects a JSON string
    for call in payload.get("tool_calls", []):
        function = call["function"]
        if not isinstance(function.get("arguments"), str):
            function["arguments"] = json.dumps(function.get("arguments"), ensure_ascii=False)
    return payload


class OpenAICompatibleProvider(Provider):
    """Flat `{model, messages, stream, tools}` providers with bearer auth.

    Used for every OpenAI-compatible cloud endpoint and, with the caller's
    URL, for custom providers.
    """

    def __init__(self, name: str, url: str):
        self.name = name
        self.url = url

    def endpoint(self, model_name: str, stream: bool) -> str:
        return self.url

    def build_body(self, req: ChatRequest, model_name: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model_name,
            "messages": [_message_payload(m) for m in req.messages],
            "stream": req.stream,
        }
        if req.tools:
            body["tools"] = [t.model_dump(mode="json", exclude_none=True) for t in req.tools]
        return body

    def _parse(self, raw: str | bytes, stage: str) -> OpenAIChunk:
        try:
            chunk = OpenAIChunk.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedPayloadError(
                f"cannot parse {self.name} payload: {e}", stage=stage
            ) from e
        if not chunk.choices:
            raise EmptyChoicesError(
                f"{self.name} payload has no choices", stage=stage
            )
        return chunk

    def parse_stream_event(self, data: str) -> StreamEvent:
        if data.strip() == DONE_SENTINEL:
            return END_OF_STREAM
        return _to_event(self._parse(data, stage="stream"))

    def parse_response(self, body: bytes) -> StreamEvent:
        return _to_event(self._parse(body, stage="response"))
