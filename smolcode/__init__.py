"""smolcode: a small coding agent that speaks both content-block and chat tool-calling APIs."""

from .agent import run_agent_loop
from .config import ProviderConfig, resolve_provider
from .errors import AgentError, ConfigError, DecodeError, TransportError
from .messages import History
from .tools import ToolRegistry, ToolSpec

__all__ = [
    "AgentError",
    "ConfigError",
    "DecodeError",
    "History",
    "ProviderConfig",
    "ToolRegistry",
    "ToolSpec",
    "TransportError",
    "resolve_provider",
    "run_agent_loop",
]
