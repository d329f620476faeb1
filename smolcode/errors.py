"""Exception types raised by the agent loop and its collaborators."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing API key, bad config file, etc.)."""


class TransportError(AgentError):
    """Raised when the HTTP exchange with the provider fails.

    ``status`` is the HTTP status code, or None when no response was received.
    """

    def __init__(self, status: int | None, body: str):
        self.status = status
        self.body = body
        if status is None:
            super().__init__(f"API request failed: {body}")
        else:
            super().__init__(f"API error: {status} - {body}")


class DecodeError(AgentError):
    """Raised when a provider response cannot be turned into content blocks."""
