import time
from typing import Callable

from unillm.providers.base import Provider
from unillm.schemas import THINK_END, THINK_START, ChatResponseFrame, ResponseMessage


def convert_response(
    provider: Provider,
    model_id: str,
    body: bytes,
    *,
    elapsed_ns: int = 0,
    clock: Callable[[], int] = time.time_ns,
) -> ChatResponseFrame:
    """Translate one complete upstream body into the single ``done`` frame.

    Side-channel reasoning is folded back into the content inside
    ``<think>`` tags, the same bracketing streaming clients see.
    """
    event = provider.parse_response(body)
    content = event.content
    if event.reasoning:
        content = f"{THINK_START}\n{event.reasoning}{THINK_END}\n{content}"
    return ChatResponseFrame.final(
        model_id,
        event.usage,
        elapsed_ns,
        clock(),
        message=ResponseMessage(role=event.role, content=content),
    )
