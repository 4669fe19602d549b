from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

THINK_START = "<think>"
THINK_END = "</think>"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# Canonical request (Ollama /api/chat)
class FunctionCall(BaseModel):
    name: str
    arguments: Any = None


class ToolCall(BaseModel):
    id: Optional[str] = None
    type: str = "function"
    function: FunctionCall


class ToolFunction(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Any = None


class Tool(BaseModel):
    type: str = "function"
    function: ToolFunction


class ChatMessage(BaseModel):
    role: Role
    content: str = ""
    images: Optional[List[str]] = None
    tool_calls: Optional[List[ToolCall]] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    messages: List[ChatMessage]
    tools: List[Tool] = Field(default_factory=list)
    # merged verbatim into the upstream body, see providers.base
    options: Optional[Dict[str, Any]] = None
    stream: bool = True
    # accepted for Ollama compatibility, not forwarded
    format: Optional[Any] = None
    keep_alive: Optional[Union[str, int, float]] = None


# Canonical response frames
class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseMessage(BaseModel):
    role: Role = Role.ASSISTANT
    content: str = ""
    images: Optional[List[str]] = None


def rfc3339_nanos(epoch_ns: int) -> str:
    """Format an epoch timestamp in nanoseconds the way Ollama stamps ``created_at``."""
    seconds, nanos = divmod(epoch_ns, 1_000_000_000)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return f"{stamp:%Y-%m-%dT%H:%M:%S}.{nanos:09d}Z"


class ChatResponseFrame(BaseModel):
    model: str
    created_at: str
    message: ResponseMessage = Field(default_factory=ResponseMessage)
    done: bool = False
    # the fields below are only set on the final (done) frame
    done_reason: Optional[str] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None

    @classmethod
    def content(cls, model: str, role: Role, text: str, created_ns: int) -> "ChatResponseFrame":
        return cls(
            model=model,
            created_at=rfc3339_nanos(created_ns),
            message=ResponseMessage(role=role, content=text),
        )

    @classmethod
    def final(
        cls,
        model: str,
        usage: Optional[TokenUsage],
        elapsed_ns: int,
        created_ns: int,
        message: Optional[ResponseMessage] = None,
    ) -> "ChatResponseFrame":
        usage = usage or TokenUsage()
        return cls(
            model=model,
            created_at=rfc3339_nanos(created_ns),
            message=message or ResponseMessage(),
            done=True,
            done_reason="stop",
            total_duration=elapsed_ns,
            load_duration=0,
            prompt_eval_count=usage.prompt_tokens,
            prompt_eval_duration=0,
            eval_count=usage.completion_tokens,
            eval_duration=elapsed_ns,
        )

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


# /api/tags, /api/version
class TagModel(BaseModel):
    name: str
    model: str


class TagsResponse(BaseModel):
    models: List[TagModel]


class VersionResponse(BaseModel):
    version: str
