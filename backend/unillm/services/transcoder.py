"""Transcode upstream SSE byte streams into Ollama NDJSON frames.

Upstream bytes arrive in network-sized chunks that do not line up with SSE
events. ``SSELineBuffer`` reassembles complete lines, each ``data: `` line
is parsed by the provider into a ``StreamEvent``, and ``transition`` decides
which frames that event produces. The state machine brackets model reasoning
with synthetic ``<think>`` / ``</think>`` frames whether the upstream marks
it inline in ``content`` or sends it in a separate reasoning field.

    INIT --<think> in content--> CONTENT_THINKING --</think>--> THINK_FINISHED
    INIT --reasoning field-----> REASONING_THINKING --content--> THINK_FINISHED
    INIT --plain content--------------------------------------> THINK_FINISHED
    any  --end of stream--> FINISHED

Providers without a thinking phase (Gemini) start in CHATTING and go to
FINISHED when the upstream reports a finish reason.
"""

import codecs
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Callable, Iterable, List, Optional, Tuple

import structlog

from unillm.providers.base import END_OF_STREAM, Provider, StreamEvent
from unillm.schemas import THINK_END, THINK_START, ChatResponseFrame, Role, TokenUsage

logger = structlog.get_logger()

DATA_PREFIX = "data: "


class StreamState(str, Enum):
    INIT = "init"
    REASONING_THINKING = "reasoning_thinking"
    CONTENT_THINKING = "content_thinking"
    THINK_FINISHED = "think_finished"
    CHATTING = "chatting"
    FINISHED = "finished"


class EmissionKind(str, Enum):
    CONTENT = "content"
    THINK_START = "think_start"
    THINK_END = "think_end"
    FINAL = "final"


@dataclass(frozen=True)
class Emission:
    kind: EmissionKind
    text: str = ""
    role: Role = Role.ASSISTANT
    usage: Optional[TokenUsage] = None


OPEN_THINK = Emission(EmissionKind.THINK_START, THINK_START)
CLOSE_THINK = Emission(EmissionKind.THINK_END, THINK_END)


def _text(event: StreamEvent, text: str) -> Emission:
    return Emission(EmissionKind.CONTENT, text, event.role)


def _content_thinking(
    event: StreamEvent, text: str, emit_empty: bool
) -> Tuple[StreamState, List[Emission]]:
    if THINK_END in text:
        thought, _, answer = text.partition(THINK_END)
        out = [_text(event, thought)] if thought else []
        out.append(CLOSE_THINK)
        if answer:
            out.append(_text(event, answer))
        return StreamState.THINK_FINISHED, out
    if text or emit_empty:
        return StreamState.CONTENT_THINKING, [_text(event, text)]
    return StreamState.CONTENT_THINKING, []


def transition(state: StreamState, event: StreamEvent) -> Tuple[StreamState, List[Emission]]:
    """Advance the machine by one upstream event.

    Pure: returns the next state and what to emit, without timestamps or
    model ids, which the caller adds when rendering frames.
    """
    if state is StreamState.FINISHED:
        return state, []
    if event.end_of_stream:
        return StreamState.FINISHED, [Emission(EmissionKind.FINAL, usage=event.usage)]

    content = event.content

    if state is StreamState.CHATTING:
        out = [_text(event, content)]
        if event.finish_reason is not None:
            out.append(Emission(EmissionKind.FINAL, usage=event.usage))
            return StreamState.FINISHED, out
        return state, out

    if state is StreamState.INIT:
        if THINK_START in content:
            head, _, rest = content.partition(THINK_START)
            out = [_text(event, head)] if head else []
            out.append(OPEN_THINK)
            next_state, more = _content_thinking(event, rest, emit_empty=False)
            return next_state, out + more
        if event.reasoning:
            out = [OPEN_THINK, _text(event, event.reasoning)]
            # reasoning and answer in the same event: close immediately
            if content:
                return StreamState.THINK_FINISHED, out + [CLOSE_THINK, _text(event, content)]
            return StreamState.REASONING_THINKING, out
        if content:
            return StreamState.THINK_FINISHED, [_text(event, content)]
        return state, []

    if state is StreamState.CONTENT_THINKING:
        return _content_thinking(event, content, emit_empty=True)

    if state is StreamState.REASONING_THINKING:
        if content:
            out = [_text(event, event.reasoning)] if event.reasoning else []
            return StreamState.THINK_FINISHED, out + [CLOSE_THINK, _text(event, content)]
        if event.reasoning:
            return state, [_text(event, event.reasoning)]
        return state, []

    # THINK_FINISHED
    return state, [_text(event, content)]


class SSELineBuffer:
    """Split a byte stream into text lines, carrying partial lines across chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        text = self._pending + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [text.rstrip("\r")] if text else []


class StreamTranscoder:
    """Per-request transcoder; never shared between requests.

    ``clock`` stamps ``created_at`` (epoch ns) and ``timer`` measures the
    elapsed duration reported on the final frame (monotonic ns).
    """

    def __init__(
        self,
        provider: Provider,
        model_id: str,
        *,
        clock: Callable[[], int] = time.time_ns,
        timer: Callable[[], int] = time.perf_counter_ns,
    ):
        self.provider = provider
        self.model_id = model_id
        self.state = StreamState.INIT if provider.thinking_markers else StreamState.CHATTING
        self._lines = SSELineBuffer()
        self._clock = clock
        self._timer = timer
        self._started = timer()
        self._usage: Optional[TokenUsage] = None

    @property
    def finished(self) -> bool:
        return self.state is StreamState.FINISHED

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one upstream chunk and return zero or more NDJSON lines."""
        if self.finished:
            return []
        return self._process(self._lines.feed(chunk))

    def finish(self) -> List[str]:
        """Flush the trailing partial line and close the stream if still open."""
        if self.finished:
            return []
        out = self._process(self._lines.flush())
        if not self.finished:
            logger.warning(
                "upstream_stream_ended_without_sentinel",
                model_id=self.model_id,
                provider=self.provider.name,
                state=self.state.value,
            )
            out.extend(self._advance(END_OF_STREAM))
        return out

    async def transcode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
        # one upstream read per step; nothing is buffered ahead of the consumer
        try:
            async for chunk in chunks:
                for line in self.feed(chunk):
                    yield line
                if self.finished:
                    break
            for line in self.finish():
                yield line
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    def _process(self, lines: Iterable[str]) -> List[str]:
        out: List[str] = []
        for line in lines:
            if self.finished:
                break
            if not line.startswith(DATA_PREFIX):
                continue
            event = self.provider.parse_stream_event(line[len(DATA_PREFIX):])
            out.extend(self._advance(event))
        return out

    def _advance(self, event: StreamEvent) -> List[str]:
        if event.usage is not None:
            self._usage = event.usage
        previous = self.state
        self.state, emissions = transition(self.state, event)
        if self.state is not previous:
            logger.debug(
                "transcoder_transition",
                model_id=self.model_id,
                from_state=previous.value,
                to_state=self.state.value,
            )
        if self.finished:
            logger.info("finished_chatting", model_id=self.model_id, provider=self.provider.name)
        return [self._render(e) for e in emissions]

    def _render(self, emission: Emission) -> str:
        created = self._clock()
        if emission.kind is EmissionKind.FINAL:
            frame = ChatResponseFrame.final(
                self.model_id,
                emission.usage or self._usage,
                self._timer() - self._started,
                created,
            )
        else:
            frame = ChatResponseFrame.content(self.model_id, emission.role, emission.text, created)
        return frame.to_json() + "\n"
