"""Token accounting for OpenAI-compatible request/response pairs.

An explicit ``usage`` object in the upstream response always wins.
Otherwise tokens are estimated at 4 characters of serialized content
per token, independently for the request and the response.
"""

import json
import math
from dataclasses import dataclass

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenCounts:
    input: int
    output: int | None  # None: not measurable (streamed response)

    @property
    def total(self) -> int:
        return self.input + (self.output or 0)


def _serialize(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _to_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def parse_json_body(content: bytes | None) -> dict:
    """Decode a JSON object body; anything else yields an empty dict."""
    if not content:
        return {}
    try:
        parsed = json.loads(content)
    except (ValueError, UnicodeDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def estimate_input_tokens(request_body: dict) -> int:
    """Chat ``messages``, completion ``prompt`` or embedding ``input``; later fields win."""
    tokens = 0
    messages = request_body.get("messages")
    if isinstance(messages, list):
        tokens = _to_tokens(_serialize(messages))
    if request_body.get("prompt"):
        tokens = _to_tokens(_serialize(request_body["prompt"]))
    if request_body.get("input"):
        tokens = _to_tokens(_serialize(request_body["input"]))
    return tokens


def estimate_output_tokens(response_body: dict) -> int:
    tokens = 0
    choices = response_body.get("choices")
    if isinstance(choices, list):
        parts = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            if choice.get("message"):
                parts.append(_serialize(choice["message"]))
            elif choice.get("text"):
                parts.append(str(choice["text"]))
        tokens = _to_tokens("".join(parts))

    # Embedding responses: mark as used without a meaningful count
    if isinstance(response_body.get("data"), list):
        tokens = 1
    return tokens


def extract_usage(response_body: dict) -> TokenCounts | None:
    usage = response_body.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenCounts(
        input=int(usage.get("prompt_tokens") or 0),
        output=int(usage.get("completion_tokens") or 0),
    )


def count_tokens(request_body: dict, response_body: dict | None, streamed: bool = False) -> TokenCounts:
    """Token counts for one forwarded request.

    Streamed responses are never read by the gateway, so only input
    tokens are attributed.
    """
    if streamed or response_body is None:
        return TokenCounts(input=estimate_input_tokens(request_body), output=None)

    explicit = extract_usage(response_body)
    if explicit is not None:
        return explicit

    return TokenCounts(
        input=estimate_input_tokens(request_body),
        output=estimate_output_tokens(response_body),
    )
