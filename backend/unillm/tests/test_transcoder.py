import json
from typing import AsyncIterator, List

import pytest

from unillm.core.errors import EmptyChoicesError, MalformedPayloadError
from unillm.providers import END_OF_STREAM, GeminiProvider, OpenAICompatibleProvider, StreamEvent
from unillm.schemas import Role
from unillm.services.transcoder import (
    EmissionKind,
    SSELineBuffer,
    StreamState,
    StreamTranscoder,
    transition,
)
from unillm.tests.utils.utils import fixed_clock, fixed_timer, openai_chunk, parse_ndjson, sse


def _openai() -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider("deepseek", "https://api.deepseek.com/chat/completions")


def _transcoder(provider=None, **kwargs) -> StreamTranscoder:
    kwargs.setdefault("clock", fixed_clock)
    kwargs.setdefault("timer", fixed_timer)
    return StreamTranscoder(provider or _openai(), "deepseek-r1", **kwargs)


def _run(transcoder: StreamTranscoder, chunks: List[bytes]) -> List[str]:
    lines: List[str] = []
    for chunk in chunks:
        lines.extend(transcoder.feed(chunk))
    lines.extend(transcoder.finish())
    return lines


def _contents(frames):
    return [f["message"]["content"] for f in frames if not f["done"]]


# --- pure transition function ---------------------------------------------


def test_init_ignores_empty_event():
    state, out = transition(StreamState.INIT, StreamEvent(content=""))
    assert state is StreamState.INIT
    assert out == []


def test_init_plain_content_skips_thinking():
    state, out = transition(StreamState.INIT, StreamEvent(content="Hel"))
    assert state is StreamState.THINK_FINISHED
    assert [(e.kind, e.text) for e in out] == [(EmissionKind.CONTENT, "Hel")]


def test_init_inline_marker_opens_thinking():
    state, out = transition(StreamState.INIT, StreamEvent(content="<think>hmm"))
    assert state is StreamState.CONTENT_THINKING
    assert [(e.kind, e.text) for e in out] == [
        (EmissionKind.THINK_START, "<think>"),
        (EmissionKind.CONTENT, "hmm"),
    ]


def test_init_reasoning_field_opens_thinking():
    state, out = transition(StreamState.INIT, StreamEvent(content="", reasoning="because"))
    assert state is StreamState.REASONING_THINKING
    assert [e.kind for e in out] == [EmissionKind.THINK_START, EmissionKind.CONTENT]
    assert out[1].text == "because"


def test_content_thinking_splits_around_close_marker():
    state, out = transition(StreamState.CONTENT_THINKING, StreamEvent(content="abc</think>def"))
    assert state is StreamState.THINK_FINISHED
    assert [(e.kind, e.text) for e in out] == [
        (EmissionKind.CONTENT, "abc"),
        (EmissionKind.THINK_END, "</think>"),
        (EmissionKind.CONTENT, "def"),
    ]


def test_content_thinking_passes_raw_content():
    state, out = transition(StreamState.CONTENT_THINKING, StreamEvent(content="still "))
    assert state is StreamState.CONTENT_THINKING
    assert [e.text for e in out] == ["still "]


def test_reasoning_thinking_closes_when_content_arrives():
    state, out = transition(StreamState.REASONING_THINKING, StreamEvent(content="answer"))
    assert state is StreamState.THINK_FINISHED
    assert [(e.kind, e.text) for e in out] == [
        (EmissionKind.THINK_END, "</think>"),
        (EmissionKind.CONTENT, "answer"),
    ]


def test_reasoning_thinking_without_reasoning_or_content_emits_nothing():
    state, out = transition(StreamState.REASONING_THINKING, StreamEvent(content=""))
    assert state is StreamState.REASONING_THINKING
    assert out == []


def test_end_of_stream_finishes_from_any_state():
    for state in (
        StreamState.INIT,
        StreamState.CONTENT_THINKING,
        StreamState.REASONING_THINKING,
        StreamState.THINK_FINISHED,
        StreamState.CHATTING,
    ):
        next_state, out = transition(state, END_OF_STREAM)
        assert next_state is StreamState.FINISHED
        assert [e.kind for e in out] == [EmissionKind.FINAL]


def test_finished_swallows_everything():
    state, out = transition(StreamState.FINISHED, StreamEvent(content="late"))
    assert state is StreamState.FINISHED
    assert out == []


def test_chatting_finishes_on_finish_reason():
    state, out = transition(StreamState.CHATTING, StreamEvent(content="bye", finish_reason="STOP"))
    assert state is StreamState.FINISHED
    assert [e.kind for e in out] == [EmissionKind.CONTENT, EmissionKind.FINAL]


# --- line buffering ---------------------------------------------------------


def test_line_buffer_carries_partial_lines():
    buf = SSELineBuffer()
    assert buf.feed(b"data: {\"a\"") == []
    assert buf.feed(b":1}\r\nda") == ['data: {"a":1}']
    assert buf.feed(b"ta: x") == []
    assert buf.flush() == ["data: x"]
    assert buf.flush() == []


def test_line_buffer_handles_split_multibyte_characters():
    raw = "data: 你好\n".encode("utf-8")
    buf = SSELineBuffer()
    lines = []
    for i in range(len(raw)):
        lines.extend(buf.feed(raw[i : i + 1]))
    assert lines == ["data: 你好"]


# --- transcoder -------------------------------------------------------------


def test_plain_content_stream():
    body = sse(openai_chunk("Hel"), openai_chunk("lo"), "[DONE]")
    frames = parse_ndjson(_run(_transcoder(), [body]))

    assert _contents(frames) == ["Hel", "lo"]
    assert [f["done"] for f in frames] == [False, False, True]
    final = frames[-1]
    assert final["done_reason"] == "stop"
    assert final["prompt_eval_count"] == 0
    assert final["eval_count"] == 0
    assert final["model"] == "deepseek-r1"


def test_content_frames_omit_final_only_fields():
    frames = parse_ndjson(_run(_transcoder(), [sse(openai_chunk("Hi"), "[DONE]")]))
    first = frames[0]
    assert first == {
        "model": "deepseek-r1",
        "created_at": "2023-11-14T22:13:20.123456789Z",
        "message": {"role": "assistant", "content": "Hi"},
        "done": False,
    }


def test_reasoning_side_channel_is_bracketed():
    body = sse(
        openai_chunk("", reasoning="because", role="assistant"),
        openai_chunk("answer"),
        "[DONE]",
    )
    frames = parse_ndjson(_run(_transcoder(), [body]))
    assert _contents(frames) == ["<think>", "because", "</think>", "answer"]
    assert all(f["message"]["role"] == "assistant" for f in frames)


def test_inline_markers_and_side_channel_bracket_the_same_way():
    inline = sse(
        openai_chunk("<think>"),
        openai_chunk("because"),
        openai_chunk("</think>"),
        openai_chunk("answer"),
        "[DONE]",
    )
    side = sse(
        openai_chunk(None, reasoning="because"),
        openai_chunk("answer"),
        "[DONE]",
    )
    inline_frames = parse_ndjson(_run(_transcoder(), [inline]))
    side_frames = parse_ndjson(_run(_transcoder(), [side]))
    assert _contents(inline_frames) == _contents(side_frames) == [
        "<think>",
        "because",
        "</think>",
        "answer",
    ]


def test_exactly_one_done_frame_and_it_is_last():
    body = sse(
        openai_chunk("<think>a"),
        openai_chunk("b</think>c"),
        openai_chunk("d"),
        "[DONE]",
    )
    frames = parse_ndjson(_run(_transcoder(), [body, sse(openai_chunk("ignored"))]))
    done = [f for f in frames if f["done"]]
    assert len(done) == 1
    assert frames[-1]["done"] is True
    assert "ignored" not in _contents(frames)


def test_usage_from_last_event_reaches_final_frame():
    usage = {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12}
    body = sse(openai_chunk("x"), openai_chunk("", usage=usage, finish_reason="stop"), "[DONE]")
    frames = parse_ndjson(_run(_transcoder(), [body]))
    final = frames[-1]
    assert final["prompt_eval_count"] == 5
    assert final["eval_count"] == 7


def test_final_frame_reports_elapsed_time():
    ticks = iter([1_000, 251_000])
    transcoder = _transcoder(timer=lambda: next(ticks))
    frames = parse_ndjson(_run(transcoder, [sse(openai_chunk("x"), "[DONE]")]))
    assert frames[-1]["eval_duration"] == 250_000
    assert frames[-1]["total_duration"] == 250_000


def test_byte_split_chunks_match_single_chunk():
    body = sse(
        openai_chunk("", reasoning="想一想"),
        openai_chunk("答案"),
        "[DONE]",
    )
    whole = _run(_transcoder(), [body])
    split = _run(_transcoder(), [body[i : i + 1] for i in range(len(body))])
    assert whole == split


def test_independent_transcoders_are_deterministic():
    chunks = [sse(openai_chunk("<think>")), sse(openai_chunk("x</think>y")), sse("[DONE]")]
    assert _run(_transcoder(), chunks) == _run(_transcoder(), chunks)


def test_non_event_lines_are_ignored():
    body = b": keep-alive\n\nevent: message\n" + sse(openai_chunk("ok"), "[DONE]")
    frames = parse_ndjson(_run(_transcoder(), [body]))
    assert _contents(frames) == ["ok"]


def test_stream_without_sentinel_still_ends_with_done():
    # no trailing newline either: the last event sits in the line buffer
    body = b"data: " + openai_chunk("tail").encode()
    frames = parse_ndjson(_run(_transcoder(), [body]))
    assert _contents(frames) == ["tail"]
    assert frames[-1]["done"] is True


def test_malformed_event_aborts():
    transcoder = _transcoder()
    with pytest.raises(MalformedPayloadError):
        transcoder.feed(b"data: {not json\n")


def test_event_without_choices_aborts():
    transcoder = _transcoder()
    with pytest.raises(EmptyChoicesError):
        transcoder.feed(sse(json.dumps({"choices": []})))


def test_unknown_upstream_role_aborts():
    transcoder = _transcoder()
    with pytest.raises(MalformedPayloadError):
        transcoder.feed(sse(openai_chunk("x", role="wizard")))


def test_gemini_stream_finishes_on_finish_reason():
    first = {"candidates": [{"content": {"parts": [{"text": "Hi"}], "role": "model"}}]}
    last = {
        "candidates": [
            {"content": {"parts": [{"text": " there"}], "role": "model"}, "finishReason": "STOP"}
        ],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 4, "totalTokenCount": 7},
    }
    body = (
        f"data: {json.dumps(first)}\r\n\r\n" f"data: {json.dumps(last)}\r\n\r\n"
    ).encode()
    transcoder = _transcoder(GeminiProvider())
    assert transcoder.state is StreamState.CHATTING

    frames = parse_ndjson(_run(transcoder, [body]))
    assert _contents(frames) == ["Hi", " there"]
    assert frames[-1]["done"] is True
    assert frames[-1]["prompt_eval_count"] == 3
    assert frames[-1]["eval_count"] == 4
    assert transcoder.finished


@pytest.mark.asyncio
async def test_transcode_pulls_chunks_lazily():
    pulled: List[bytes] = []
    chunks = [sse(openai_chunk("a")), sse(openai_chunk("b")), sse("[DONE]"), sse(openai_chunk("never"))]

    async def upstream() -> AsyncIterator[bytes]:
        for chunk in chunks:
            pulled.append(chunk)
            yield chunk

    stream = _transcoder().transcode(upstream())
    first = await stream.__anext__()
    assert json.loads(first)["message"]["content"] == "a"
    assert len(pulled) == 1

    rest = [line async for line in stream]
    frames = parse_ndjson([first] + rest)
    assert _contents(frames) == ["a", "b"]
    assert frames[-1]["done"] is True
    # stops reading once the sentinel is seen
    assert len(pulled) == 3


@pytest.mark.asyncio
async def test_transcode_closes_upstream_after_sentinel():
    closed = []

    async def upstream() -> AsyncIterator[bytes]:
        try:
            yield sse(openai_chunk("a"), "[DONE]")
            yield sse(openai_chunk("never"))
        finally:
            closed.append(True)

    lines = [line async for line in _transcoder().transcode(upstream())]
    assert parse_ndjson(lines)[-1]["done"] is True
    assert closed == [True]


def test_content_frame_role_defaults_to_assistant():
    frames = parse_ndjson(_run(_transcoder(), [sse(openai_chunk("x"), "[DONE]")]))
    assert frames[0]["message"]["role"] == Role.ASSISTANT.value
