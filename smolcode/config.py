"""Provider resolution and configuration file loading for smolcode.

Provider selection comes from the environment (OPENROUTER_API_KEY,
GROQ_API_KEY, ANTHROPIC_API_KEY, MODEL). TOML config is read from
~/.config/smolcode/config.toml (global) and <base_dir>/smolcode.toml
(project). Precedence: CLI > project > global > environment > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

UNSET = object()  # Sentinel for "not set by CLI"

CONTENT_BLOCK = "content-block"
CHAT = "chat"

AUTH_BEARER = "bearer"
AUTH_API_KEY = "x-api-key"


@dataclass(frozen=True)
class ProviderConfig:
    """Everything needed to talk to one provider, fixed for the whole run."""

    provider: str
    endpoint: str
    credential: str
    model: str
    family: str
    auth: str


@dataclass(frozen=True)
class _ProviderDefaults:
    env_var: str
    endpoint: str
    model: str
    family: str
    auth: str


# Checked in this order when no provider is named explicitly.
PROVIDERS: dict[str, _ProviderDefaults] = {
    "openrouter": _ProviderDefaults(
        "OPENROUTER_API_KEY",
        "https://openrouter.ai/api/v1/messages",
        "anthropic/claude-opus-4.5",
        CONTENT_BLOCK,
        AUTH_BEARER,
    ),
    "groq": _ProviderDefaults(
        "GROQ_API_KEY",
        "https://api.groq.com/openai/v1/chat/completions",
        "llama-3.3-70b-versatile",
        CHAT,
        AUTH_BEARER,
    ),
    "anthropic": _ProviderDefaults(
        "ANTHROPIC_API_KEY",
        "https://api.anthropic.com/v1/messages",
        "claude-opus-4-5",
        CONTENT_BLOCK,
        AUTH_API_KEY,
    ),
}

MODEL_ENV_VAR = "MODEL"


def resolve_provider(
    *,
    provider: str | None = None,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProviderConfig:
    """Build the ProviderConfig for this run.

    Explicit arguments win; otherwise the first provider whose API key
    variable is set is selected. MODEL overrides the default model for any
    provider.
    """
    env = os.environ if environ is None else environ

    if provider is not None:
        if provider not in PROVIDERS:
            known = ", ".join(PROVIDERS)
            raise ConfigError(f"unknown provider {provider!r} (expected one of: {known})")
        name = provider
    else:
        name = next((n for n, d in PROVIDERS.items() if env.get(d.env_var)), None)
        if name is None and api_key:
            name = "anthropic"
        if name is None:
            variables = ", ".join(d.env_var for d in PROVIDERS.values())
            raise ConfigError(f"no API key found: set one of {variables}")

    defaults = PROVIDERS[name]
    credential = api_key or env.get(defaults.env_var)
    if not credential:
        raise ConfigError(
            f"{name} requires an API key: set {defaults.env_var} or pass --api-key"
        )

    return ProviderConfig(
        provider=name,
        endpoint=base_url or defaults.endpoint,
        credential=credential,
        model=model or env.get(MODEL_ENV_VAR) or defaults.model,
        family=defaults.family,
        auth=defaults.auth,
    )


# --- Config files ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "base_dir": str,
    "max_turns": int,
    "command_timeout": int,
    "request_timeout": (int, float),
    "system_prompt": str,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "base_url": None,
    "base_dir": ".",
    "max_turns": 100,
    "command_timeout": 30,
    "request_timeout": 300,
    "system_prompt": None,
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "smolcode"
    return Path.home() / ".config" / "smolcode"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types. Raises ConfigError; warns about unknown keys."""
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(f"{source}: unknown provider {config['provider']!r}")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve a relative base_dir against the config file's directory."""
    if "base_dir" in config:
        expanded = Path(config["base_dir"]).expanduser()
        if not expanded.is_absolute():
            expanded = config_dir / expanded
        config["base_dir"] = str(expanded)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Only keys actually set in config files are returned (no defaults).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "smolcode.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values where the CLI left a value unset, then fill defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, UNSET) is UNSET

    # A single config key controls the --color/--no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config() -> str:
    """Return a commented-out template config string."""
    lines = [
        "# smolcode configuration file",
        "# Global: ~/.config/smolcode/config.toml  Project: <base_dir>/smolcode.toml",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        '# provider = "anthropic"        # "openrouter" | "groq" | "anthropic"',
        '# model = "claude-opus-4-5"',
        '# api_key = "sk-..."             # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# max_turns = 100                # 0 = no limit",
        "# command_timeout = 30           # seconds, bash tool",
        "# request_timeout = 300          # seconds, model HTTP call",
        '# system_prompt = "Concise coding assistant."',
        "# yolo = false                   # allow file tools outside base_dir",
        "",
        "# color = true",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
