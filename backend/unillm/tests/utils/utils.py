import json
from typing import Any, Dict, Iterable, List, Optional

# 2023-11-14T22:13:20.123456789Z
FIXED_NS = 1_700_000_000_123_456_789


def fixed_clock() -> int:
    return FIXED_NS


def fixed_timer() -> int:
    return 0


def sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


def openai_chunk(
    content: Optional[str] = None,
    reasoning: Optional[str] = None,
    role: Optional[str] = None,
    usage: Optional[Dict[str, int]] = None,
    finish_reason: Optional[str] = None,
) -> str:
    delta: Dict[str, Any] = {"content": content}
    if role is not None:
        delta["role"] = role
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    body: Dict[str, Any] = {
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
    }
    if usage is not None:
        body["usage"] = usage
    return json.dumps(body, ensure_ascii=False)


def parse_ndjson(lines: Iterable[str]) -> List[Dict[str, Any]]:
    frames = []
    for line in lines:
        assert line.endswith("\n")
        frames.extend(json.loads(part) for part in line.splitlines() if part.strip())
    return frames


SAMPLE_CONFIG = {
    "proxyUrl": None,
    "apiKeys": {
        "aliyun": {"apiKey": ["ak-1", "ak-2"], "provider": "aliyun"},
        "google": {"apiKey": "g-1", "provider": "google", "needProxy": True},
        "mine": {"apiKey": "c-1", "provider": {"custom": "https://llm.example.com/v1/chat/completions"}},
    },
    "models": {
        "aliyun-r1": {"name": "deepseek-r1", "apiKeyId": "aliyun"},
        "gemini-2.0-flash": {"name": "gemini-2.0-flash", "apiKeyId": "google"},
        "my-model": {"name": "served-name", "apiKeyId": "mine"},
        "orphan": {"name": "orphan", "apiKeyId": "missing-pool"},
    },
}
