"""Translation between the canonical message model and provider wire formats.

Two families are supported:

- content-block: the canonical shape itself (system prompt as a top-level
  field, tool results nested in user messages).
- chat: chat-completions with a ``tool_calls`` list on assistant messages
  and one ``tool`` role message per tool result.

Everything here is pure: no I/O, no environment access, and the history
passed in is never mutated.
"""

import copy
import json
import uuid

from .config import AUTH_API_KEY, CHAT, CONTENT_BLOCK, ProviderConfig
from .errors import DecodeError
from .messages import text_block, tool_use_block

MAX_OUTPUT_TOKENS = 1600
ANTHROPIC_VERSION = "2023-06-01"

FAMILIES = (CONTENT_BLOCK, CHAT)


def _check_family(family: str) -> None:
    if family not in FAMILIES:
        raise ValueError(f"unknown protocol family {family!r}")


def build_headers(config: ProviderConfig) -> dict:
    headers = {"Content-Type": "application/json"}
    if config.family == CONTENT_BLOCK:
        headers["anthropic-version"] = ANTHROPIC_VERSION
    if config.auth == AUTH_API_KEY:
        headers["x-api-key"] = config.credential
    else:
        headers["Authorization"] = f"Bearer {config.credential}"
    return headers


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def chat_tools(tool_schemas: list) -> list[dict]:
    """Re-wrap tool schemas under the chat family's function envelope."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t["description"],
                "parameters": t["input_schema"],
            },
        }
        for t in tool_schemas
    ]


def _chat_assistant(blocks: list) -> dict:
    texts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
    text = "\n".join(t for t in texts if t)
    msg: dict = {"role": "assistant", "content": text or None}
    tool_calls = [
        {
            "id": b["id"],
            "type": "function",
            "function": {
                "name": b["name"],
                "arguments": json.dumps(b.get("input", {})),
            },
        }
        for b in blocks
        if b.get("type") == "tool_use"
    ]
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return msg


def _chat_user(blocks: list) -> list[dict]:
    """One tool message per tool_result block; leftover text becomes a user message."""
    out = []
    texts = []
    for b in blocks:
        kind = b.get("type")
        if kind == "tool_result":
            out.append(
                {
                    "role": "tool",
                    "tool_call_id": b["tool_use_id"],
                    "content": b.get("content", ""),
                }
            )
        elif kind == "text":
            texts.append(b.get("text", ""))
    if texts:
        out.append({"role": "user", "content": "\n".join(texts)})
    return out


def chat_messages(system_prompt: str, history) -> list[dict]:
    """Flatten the canonical history into chat-completions messages."""
    out: list[dict] = [{"role": "system", "content": system_prompt}]
    for msg in history:
        role = msg["role"]
        content = msg["content"]
        if isinstance(content, str):
            out.append({"role": role, "content": content})
        elif role == "assistant":
            out.append(_chat_assistant(content))
        else:
            out.extend(_chat_user(content))
    return out


def encode_request(
    config: ProviderConfig, system_prompt: str, history, tool_schemas: list
) -> dict:
    """Build the JSON request body for one model call."""
    _check_family(config.family)
    if config.family == CONTENT_BLOCK:
        return {
            "model": config.model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "system": system_prompt,
            "messages": [copy.deepcopy(m) for m in history],
            "tools": copy.deepcopy(tool_schemas),
        }
    return {
        "model": config.model,
        "messages": chat_messages(system_prompt, history),
        "tools": chat_tools(tool_schemas),
        "tool_choice": "auto",
        "max_tokens": MAX_OUTPUT_TOKENS,
    }


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _first_chat_message(payload: dict) -> dict:
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not choices or not isinstance(choices, list):
        raise DecodeError("malformed response: no choices in chat completion")
    if not isinstance(choices[0], dict):
        raise DecodeError("malformed response: first choice is not an object")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise DecodeError("malformed response: first choice has no message")
    return message


def _parse_arguments(name: str, raw) -> dict:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise DecodeError(f"invalid JSON in arguments for tool {name!r}: {e}")
    if not isinstance(parsed, dict):
        raise DecodeError(
            f"arguments for tool {name!r} must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed


def _check_block(block) -> dict:
    """Reject content blocks the rest of the agent cannot handle."""
    if not isinstance(block, dict) or not isinstance(block.get("type"), str):
        raise DecodeError(f"malformed response: content block is not a typed object: {block!r}")
    kind = block["type"]
    if kind == "text" and not isinstance(block.get("text"), str):
        raise DecodeError("malformed response: text block without string text")
    if kind == "tool_use":
        if not isinstance(block.get("id"), str) or not isinstance(block.get("name"), str):
            raise DecodeError("malformed response: tool_use block needs string id and name")
        if not isinstance(block.get("input"), dict):
            raise DecodeError(
                f"malformed response: input for tool {block['name']!r} is not an object"
            )
    return block


def _decode_tool_call(call) -> dict:
    if not isinstance(call, dict):
        raise DecodeError("malformed response: tool call is not an object")
    fn = call.get("function") or {}
    if not isinstance(fn, dict):
        raise DecodeError("malformed response: tool call function is not an object")
    name = fn.get("name")
    if not name or not isinstance(name, str):
        raise DecodeError("malformed response: tool call without a function name")
    call_id = call.get("id") or f"call_{uuid.uuid4().hex[:24]}"
    if not isinstance(call_id, str):
        raise DecodeError(f"malformed response: id for tool {name!r} is not a string")
    return tool_use_block(call_id, name, _parse_arguments(name, fn.get("arguments")))


def decode_response(family: str, payload: dict) -> list[dict]:
    """Turn a provider response body into canonical content blocks.

    Raises DecodeError for anything that does not fit the canonical shape, so a
    bad response aborts the turn instead of reaching the history.
    """
    _check_family(family)
    if not isinstance(payload, dict):
        raise DecodeError(f"malformed response: expected object, got {type(payload).__name__}")

    if family == CONTENT_BLOCK:
        content = payload.get("content")
        if content is None:
            return []
        if not isinstance(content, list):
            raise DecodeError("malformed response: 'content' is not a list")
        return [_check_block(block) for block in content]

    message = _first_chat_message(payload)
    blocks: list[dict] = []
    text = message.get("content")
    if text is not None and not isinstance(text, str):
        raise DecodeError(
            f"malformed response: message content is {type(text).__name__}, not a string"
        )
    if text:
        blocks.append(text_block(text))
    tool_calls = message.get("tool_calls") or []
    if not isinstance(tool_calls, list):
        raise DecodeError("malformed response: 'tool_calls' is not a list")
    blocks.extend(_decode_tool_call(call) for call in tool_calls)
    return blocks


def stop_reason(family: str, payload: dict) -> str | None:
    """Extract the provider's stop/finish reason, for diagnostics only."""
    if not isinstance(payload, dict):
        return None
    if family == CONTENT_BLOCK:
        return payload.get("stop_reason")
    choices = payload.get("choices") or []
    if choices and isinstance(choices[0], dict):
        return choices[0].get("finish_reason")
    return None
