from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from unillm.core.errors import EmptyChoicesError, MalformedPayloadError
from unillm.providers.base import Provider, StreamEvent
from unillm.schemas import ChatRequest, Role, TokenUsage

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


class _GeminiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeminiPart(_GeminiModel):
    text: str = ""


class GeminiContent(_GeminiModel):
    parts: List[GeminiPart] = Field(default_factory=list)
    role: Optional[str] = None


class GeminiCandidate(_GeminiModel):
    content: GeminiContent = Field(default_factory=GeminiContent)
    finish_reason: Optional[str] = None


class GeminiUsage(_GeminiModel):
    prompt_token_count: int = 0
    candidates_token_count: Optional[int] = None
    total_token_count: int = 0

    def to_usage(self) -> TokenUsage:
        completion = self.candidates_token_count
        if completion is None:
            completion = max(self.total_token_count - self.prompt_token_count, 0)
        return TokenUsage(
            prompt_tokens=self.prompt_token_count,
            completion_tokens=completion,
            total_tokens=self.total_token_count,
        )


class GeminiResponse(_GeminiModel):
    candidates: List[GeminiCandidate] = Field(default_factory=list)
    usage_metadata: Optional[GeminiUsage] = None


def group_contents(req: ChatRequest) -> Dict[str, Any]:
    """Regroup the flat message list into Gemini `contents` + `systemInstruction`.

    Every system message becomes one text part of a single system
    instruction; assistant turns are sent as role ``model`` and everything
    else as ``user``, keeping their relative order.
    """
    contents: List[Dict[str, Any]] = []
    system_parts: List[Dict[str, str]] = []
    for msg in req.messages:
        part = {"text": msg.content}
        if msg.role is Role.SYSTEM:
            system_parts.append(part)
        elif msg.role is Role.ASSISTANT:
            contents.append({"role": "model", "parts": [part]})
        else:
            contents.append({"role": "user", "parts": [part]})

    body: Dict[str, Any] = {"contents": contents}
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


class GeminiProvider(Provider):
    name = "google"
    thinking_markers = False

    def __init__(self, base_url: str = GEMINI_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def endpoint(self, model_name: str, stream: bool) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self.base_url}/{model_name}:{method}"

    # key goes in the query string, not in a header
    def auth_headers(self, api_key: str) -> Dict[str, str]:
        return {}

    def query_params(self, api_key: str, stream: bool) -> Dict[str, str]:
        if stream:
            return {"alt": "sse", "key": api_key}
        return {"key": api_key}

    def build_body(self, req: ChatRequest, model_name: str) -> Dict[str, Any]:
        return group_contents(req)

    def _parse(self, raw: str | bytes, stage: str) -> StreamEvent:
        try:
            resp = GeminiResponse.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedPayloadError(
                f"cannot parse gemini payload: {e}", stage=stage
            ) from e
        if not resp.candidates:
            raise EmptyChoicesError("gemini payload has no candidates", stage=stage)
        candidate = resp.candidates[0]
        return StreamEvent(
            content="".join(p.text for p in candidate.content.parts),
            role=Role.ASSISTANT,
            usage=resp.usage_metadata.to_usage() if resp.usage_metadata else None,
            finish_reason=candidate.finish_reason,
        )

    def parse_stream_event(self, data: str) -> StreamEvent:
        return self._parse(data, stage="stream")

    def parse_response(self, body: bytes) -> StreamEvent:
        return self._parse(body, stage="response")
