"""Canonical conversation model: role-tagged messages of text or content blocks.

Messages are plain dicts in the content-block shape, e.g.::

    {"role": "user", "content": "list files"}
    {"role": "assistant", "content": [{"type": "tool_use", "id": "t1",
                                       "name": "glob", "input": {"pat": "*.py"}}]}
    {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1",
                                  "content": "a.py"}]}

The system prompt is never stored here; it travels next to the history.
"""

ROLES = ("user", "assistant")


def text_block(text: str) -> dict:
    return {"type": "text", "text": text}


def tool_use_block(tool_id: str, name: str, tool_input: dict) -> dict:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def tool_result_block(tool_use_id: str, content: str) -> dict:
    return {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}


def user_message(content: str | list) -> dict:
    return {"role": "user", "content": content}


def assistant_message(content: str | list) -> dict:
    return {"role": "assistant", "content": content}


def tool_uses(blocks: list) -> list[dict]:
    """Return the tool_use blocks of a turn, in the order they were emitted."""
    return [b for b in blocks if b.get("type") == "tool_use"]


def text_of(blocks: list) -> str:
    """Concatenate the text blocks of a turn."""
    return "\n".join(b.get("text", "") for b in blocks if b.get("type") == "text")


class History:
    """Append-only conversation history.

    Nothing is ever removed except by a full clear().
    """

    def __init__(self, messages: list | None = None):
        self._messages: list[dict] = []
        for m in messages or []:
            self.append(m)

    def append(self, message: dict) -> None:
        role = message.get("role")
        if role == "system":
            raise ValueError("system messages are not stored in history")
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        content = message.get("content")
        if not isinstance(content, (str, list)):
            raise ValueError(
                f"content must be a string or a list of blocks, got {type(content).__name__}"
            )
        self._messages.append(message)

    def clear(self) -> int:
        """Drop every message. Returns the number of messages removed."""
        dropped = len(self._messages)
        self._messages.clear()
        return dropped

    def last(self) -> dict | None:
        return self._messages[-1] if self._messages else None

    @property
    def messages(self) -> list[dict]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]
