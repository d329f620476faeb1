"""Tool registry and the built-in tools exposed to the model."""

from __future__ import annotations

import os
import re
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_GLOB_RESULTS = 100
MAX_GREP_HITS = 50
MAX_COMMAND_OUTPUT = 10 * 1024 * 1024  # 10 MB
DEFAULT_COMMAND_TIMEOUT = 30
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

_JSON_TYPES = {"string": "string", "number": "integer", "boolean": "boolean"}


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: declared parameters plus the function that runs it.

    ``params`` maps each parameter name to its declared type ("string",
    "number" or "boolean"); a trailing "?" marks the parameter optional.
    ``fn`` is called as ``fn(args, registry)`` with already validated args.
    """

    name: str
    description: str
    params: dict
    fn: Callable[[dict, "ToolRegistry"], str]


def parse_param_type(declared: str) -> tuple[str, bool]:
    """Split a declared type into (json_schema_type, optional)."""
    optional = declared.endswith("?")
    base = declared.rstrip("?")
    if base not in _JSON_TYPES:
        raise ValueError(f"unsupported parameter type {declared!r}")
    return _JSON_TYPES[base], optional


def tool_schema(spec: ToolSpec) -> dict:
    """Build the provider-neutral schema for one tool."""
    properties = {}
    required = []
    for param, declared in spec.params.items():
        json_type, optional = parse_param_type(declared)
        properties[param] = {"type": json_type}
        if not optional:
            required.append(param)
    return {
        "name": spec.name,
        "description": spec.description,
        "input_schema": {
            "type": "object",
            "properties": properties,
            "required": required,
        },
    }


def _matches_type(value, json_type: str) -> bool:
    # bool is a subclass of int in Python; reject it for integer params.
    if json_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if json_type == "boolean":
        return isinstance(value, bool)
    return isinstance(value, str)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Relative paths are resolved against base_dir. When unrestricted is True
    the containment check is skipped.

    Raises:
        ValueError: If the resolved path escapes base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted or resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"error: pattern {pattern!r} must be relative, not absolute"
    posix_parts = PurePosixPath(pattern).parts
    win_parts = PureWindowsPath(pattern).parts
    if ".." in posix_parts or ".." in win_parts:
        return f"error: pattern {pattern!r} contains '..', which is not allowed"
    return None


def _display_path(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _read_file(
    file_path: str,
    base_dir: str,
    offset: int = 0,
    limit: int | None = None,
    unrestricted: bool = False,
) -> str:
    """Read a file, returning its lines prefixed with 1-based line numbers."""
    try:
        resolved = safe_resolve(file_path, base_dir, unrestricted=unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: path does not exist: {file_path}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory, not a file"

    with open(resolved, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    if b"\x00" in chunk:
        return f"error: binary file detected: {file_path}"

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {file_path} as UTF-8: {exc}"

    lines = text.split("\n")
    start = max(offset, 0)
    end = len(lines) if limit is None else start + max(limit, 0)

    output_parts = []
    total_bytes = 0
    truncated = False
    for i, line in enumerate(lines[start:end], start=start + 1):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        numbered = f"{i:4d}| {line}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            truncated = True
            break
        output_parts.append(numbered)
        total_bytes += encoded_len

    result = "\n".join(output_parts)
    if truncated:
        next_offset = start + len(output_parts)
        result += f"\n[truncated at 50KB, use offset={next_offset} to continue]"
    return result


def _write_file(
    file_path: str, content: str, base_dir: str, unrestricted: bool = False
) -> str:
    """Create or overwrite a file with content."""
    try:
        resolved = safe_resolve(file_path, base_dir, unrestricted=unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return "ok"


def _edit_file(
    file_path: str,
    old: str,
    new: str,
    base_dir: str,
    replace_all: bool = False,
    unrestricted: bool = False,
) -> str:
    """Replace old with new in an existing file."""
    try:
        resolved = safe_resolve(file_path, base_dir, unrestricted=unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: file does not exist: {file_path}"
    if not old:
        return "error: old_string must not be empty"

    text = resolved.read_text(encoding="utf-8")
    count = text.count(old)
    if count == 0:
        return "error: old_string not found"
    if count > 1 and not replace_all:
        return f"error: old_string appears {count} times, must be unique (use all=true)"

    if replace_all:
        text = text.replace(old, new)
    else:
        text = text.replace(old, new, 1)
    resolved.write_text(text, encoding="utf-8")
    return "ok"


def _glob(
    pattern: str, path: str, base_dir: str, unrestricted: bool = False
) -> str:
    """List paths matching a glob pattern: files first, newest first."""
    err = _check_pattern(pattern)
    if err:
        return err

    try:
        root = safe_resolve(path, base_dir, unrestricted=unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    if not root.exists():
        return f"error: path does not exist: {path}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    base = Path(base_dir).resolve()
    entries = []
    for match in root.glob(pattern):
        if ".git" in match.relative_to(root).parts:
            continue
        try:
            st = match.stat()
        except OSError:
            continue
        entries.append((not match.is_file(), -st.st_mtime, match))

    if not entries:
        return "none"

    entries.sort(key=lambda e: (e[0], e[1]))
    truncated = len(entries) > MAX_GLOB_RESULTS
    lines = [_display_path(m, base) for _, _, m in entries[:MAX_GLOB_RESULTS]]
    result = "\n".join(lines)
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_GLOB_RESULTS} of "
            f"{len(entries)}. Use a more specific pattern or path.)"
        )
    return result


def _grep(pattern: str, path: str, base_dir: str, unrestricted: bool = False) -> str:
    """Search file contents for a regex pattern."""
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"

    try:
        root = safe_resolve(path, base_dir, unrestricted=unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    if not root.exists():
        return f"error: path does not exist: {path}"

    base = Path(base_dir).resolve()
    if root.is_file():
        candidates = [root]
    else:
        candidates = []
        for dirpath, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d != ".git")
            candidates.extend(Path(dirpath) / name for name in sorted(files))

    hits: list[str] = []
    for filepath in candidates:
        try:
            with open(filepath, "rb") as f:
                chunk = f.read(BINARY_CHECK_BYTES)
            if b"\x00" in chunk:
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue

        rel = _display_path(filepath, base)
        for line_no, line in enumerate(text.split("\n"), start=1):
            if regex.search(line):
                hits.append(f"{rel}:{line_no}:{line.strip()[:MAX_LINE_LENGTH]}")
                if len(hits) >= MAX_GREP_HITS:
                    return "\n".join(hits)

    return "\n".join(hits) or "none"


# ---------------------------------------------------------------------------
# Shell tool
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # process is unkillable


def _capture_process(
    proc: subprocess.Popen,
    timeout: int,
    on_output: Callable[[str], None] | None = None,
    max_output: int = MAX_COMMAND_OUTPUT,
) -> str:
    """Collect a running process's output, enforcing a timeout and a size cap.

    Each output line is handed to on_output as soon as it is read.
    """
    output_chunks: list[bytes] = []
    output_total = 0
    overflowed = threading.Event()

    def _reader():
        nonlocal output_total
        try:
            for raw in iter(proc.stdout.readline, b""):
                if overflowed.is_set():
                    continue  # keep draining until the process is gone
                remaining = max_output - output_total
                output_chunks.append(raw[:remaining])
                output_total += len(output_chunks[-1])
                if on_output is not None:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if line:
                        on_output(line)
                if output_total >= max_output:
                    overflowed.set()
                    _kill_process_tree(proc)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace").strip()
    parts: list[str] = []
    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif overflowed.is_set():
        if max_output >= 1024 * 1024:
            limit = f"{max_output // (1024 * 1024)}MB"
        else:
            limit = f"{max_output} bytes"
        parts.append(f"error: command output exceeded {limit}, process killed")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    if raw_output:
        parts.append(raw_output)

    return "\n".join(parts) if parts else "(empty)"


def _run_shell_command(
    command: str,
    base_dir: str,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
    on_output: Callable[[str], None] | None = None,
) -> str:
    """Execute a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    base_path = Path(base_dir)
    if not base_path.is_dir():
        return f"error: base directory is not a directory: {base_dir}"

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    return _capture_process(proc, max(1, timeout), on_output=on_output)


# ---------------------------------------------------------------------------
# Built-in catalog
# ---------------------------------------------------------------------------


def _tool_read(args: dict, registry: "ToolRegistry") -> str:
    return _read_file(
        args["path"],
        registry.base_dir,
        offset=args.get("offset", 0),
        limit=args.get("limit"),
        unrestricted=registry.unrestricted,
    )


def _tool_write(args: dict, registry: "ToolRegistry") -> str:
    return _write_file(
        args["path"], args["content"], registry.base_dir, registry.unrestricted
    )


def _tool_edit(args: dict, registry: "ToolRegistry") -> str:
    return _edit_file(
        args["path"],
        args["old"],
        args["new"],
        registry.base_dir,
        replace_all=args.get("all", False),
        unrestricted=registry.unrestricted,
    )


def _tool_glob(args: dict, registry: "ToolRegistry") -> str:
    return _glob(
        args["pat"], args.get("path", "."), registry.base_dir, registry.unrestricted
    )


def _tool_grep(args: dict, registry: "ToolRegistry") -> str:
    return _grep(
        args["pat"], args.get("path", "."), registry.base_dir, registry.unrestricted
    )


def _tool_bash(args: dict, registry: "ToolRegistry") -> str:
    return _run_shell_command(
        args["cmd"],
        registry.base_dir,
        timeout=registry.command_timeout,
        on_output=registry.on_output,
    )


BUILTIN_TOOLS = (
    ToolSpec(
        "read",
        "Read file with line numbers (file path, not directory)",
        {"path": "string", "offset": "number?", "limit": "number?"},
        _tool_read,
    ),
    ToolSpec(
        "write",
        "Write content to file",
        {"path": "string", "content": "string"},
        _tool_write,
    ),
    ToolSpec(
        "edit",
        "Replace old with new in file (old must be unique unless all=true)",
        {"path": "string", "old": "string", "new": "string", "all": "boolean?"},
        _tool_edit,
    ),
    ToolSpec(
        "glob",
        "Find files by pattern, sorted by mtime",
        {"pat": "string", "path": "string?"},
        _tool_glob,
    ),
    ToolSpec(
        "grep",
        "Search files for regex pattern",
        {"pat": "string", "path": "string?"},
        _tool_grep,
    ),
    ToolSpec("bash", "Run shell command", {"cmd": "string"}, _tool_bash),
)


class ToolRegistry:
    """Fixed catalog of tools, built once at startup.

    invoke() is the only entry point the agent loop uses to run a tool, and it
    always returns a string: failures come back prefixed with "error:" so the
    model can see them and adapt.
    """

    def __init__(
        self,
        specs=BUILTIN_TOOLS,
        *,
        base_dir: str = ".",
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        unrestricted: bool = False,
        on_output: Callable[[str], None] | None = None,
    ):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"duplicate tool name {spec.name!r}")
            for declared in spec.params.values():
                parse_param_type(declared)
            self._specs[spec.name] = spec
        self.base_dir = base_dir
        self.command_timeout = command_timeout
        self.unrestricted = unrestricted
        self.on_output = on_output

    def list(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def schemas(self) -> list[dict]:
        return [tool_schema(spec) for spec in self._specs.values()]

    @staticmethod
    def validate(spec: ToolSpec, args) -> str | None:
        """Check args against the declared parameters. Returns an error or None."""
        if not isinstance(args, dict):
            return f"error: arguments for {spec.name} must be an object, got {type(args).__name__}"
        for param, declared in spec.params.items():
            json_type, optional = parse_param_type(declared)
            if param not in args or args[param] is None:
                if not optional:
                    return f"error: missing required argument {param!r} for {spec.name}"
                continue
            if not _matches_type(args[param], json_type):
                return (
                    f"error: argument {param!r} for {spec.name} must be {json_type}, "
                    f"got {type(args[param]).__name__}"
                )
        return None

    def invoke(self, name: str, args) -> str:
        """Run a tool by name. Never raises for tool-level failures."""
        spec = self._specs.get(name)
        if spec is None:
            known = ", ".join(self._specs) or "(none)"
            return f"error: unknown tool {name!r}. Available tools: {known}"

        err = self.validate(spec, args)
        if err:
            return err

        clean = {
            k: v for k, v in args.items() if k in spec.params and v is not None
        }
        try:
            result = spec.fn(clean, self)
        except Exception as e:
            return f"error: {e}"
        if not isinstance(result, str):
            return f"error: tool {name!r} returned {type(result).__name__}, not a string"
        return result
