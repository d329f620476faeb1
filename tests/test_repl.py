"""Tests for REPL mode: argument parsing, slash commands and repl_loop."""

from unittest.mock import MagicMock, patch

import pytest

from smolcode.agent import _repl_clear, _repl_help, build_parser, repl_loop
from smolcode.config import UNSET, ProviderConfig
from smolcode.errors import TransportError
from smolcode.messages import History, assistant_message, text_block, user_message
from smolcode.tools import ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _loop_kwargs(**overrides):
    defaults = dict(
        config=ProviderConfig(
            provider="anthropic",
            endpoint="https://example.invalid/v1",
            credential="secret",
            model="test-model",
            family="content-block",
            auth="x-api-key",
        ),
        system_prompt="test prompt",
        max_turns=5,
        verbose=False,
    )
    defaults.update(overrides)
    return defaults


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestArgParsing:
    def test_question_optional(self):
        args = build_parser().parse_args([])
        assert args.question is None

    def test_question_positional(self):
        args = build_parser().parse_args(["what is here?"])
        assert args.question == "what is here?"

    def test_defaults_are_unset(self):
        args = build_parser().parse_args([])
        for name in ("provider", "model", "api_key", "max_turns", "yolo", "quiet", "color"):
            assert getattr(args, name) is UNSET

    def test_provider_choices(self):
        args = build_parser().parse_args(["--provider", "groq"])
        assert args.provider == "groq"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--provider", "nowhere"])

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])

    def test_numeric_options(self):
        args = build_parser().parse_args(
            ["--max-turns", "0", "--command-timeout", "5", "--request-timeout", "2.5"]
        )
        assert args.max_turns == 0
        assert args.command_timeout == 5
        assert args.request_timeout == 2.5


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _mock_session(self, inputs):
        """Create a mock PromptSession whose .prompt() returns values from inputs."""
        mock_session = MagicMock()
        side = []
        for v in inputs:
            if v is EOFError:
                side.append(EOFError())
            elif v is KeyboardInterrupt:
                side.append(KeyboardInterrupt())
            else:
                side.append(v)
        mock_session.prompt.side_effect = side
        return mock_session

    def _patch_session(self, inputs):
        """Return a patch context that replaces PromptSession with a mock."""
        return patch("prompt_toolkit.PromptSession", return_value=self._mock_session(inputs))

    @pytest.mark.parametrize("command", ["/q", "/quit", "/exit", "exit", "EXIT"])
    def test_quit_commands(self, command):
        history = History()
        with self._patch_session([command]):
            repl_loop(history, ToolRegistry(), **_loop_kwargs())
        assert len(history) == 0

    def test_eof(self):
        history = History()
        with self._patch_session([EOFError]):
            repl_loop(history, ToolRegistry(), **_loop_kwargs())
        assert len(history) == 0

    def test_ctrl_c_at_prompt_exits(self):
        with self._patch_session([KeyboardInterrupt]) as mock_cls:
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        assert mock_cls.return_value.prompt.call_count == 1

    def test_empty_lines_ignored(self):
        inputs = ["", "   ", "hello", "/q"]
        with (
            self._patch_session(inputs),
            patch("smolcode.agent.run_agent_loop", return_value=("answer", False)) as mock_loop,
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        assert mock_loop.call_count == 1

    def test_history_persists_across_questions(self):
        snapshots = []

        def fake_run(history, registry, **kwargs):
            snapshots.append(history.messages)
            history.append(assistant_message([text_block("answer")]))
            return ("answer", False)

        inputs = ["first question", "second question", "/q"]
        with (
            self._patch_session(inputs),
            patch("smolcode.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())

        assert [m["content"] for m in snapshots[0]] == ["first question"]
        assert snapshots[1][2] == user_message("second question")
        assert len(snapshots[1]) == 3

    def test_input_is_stripped(self):
        history = History()
        with (
            self._patch_session(["  spaced  ", "/q"]),
            patch("smolcode.agent.run_agent_loop", return_value=("ok", False)),
        ):
            repl_loop(history, ToolRegistry(), **_loop_kwargs())
        assert history[0] == user_message("spaced")

    def test_ctrl_c_during_loop(self):
        count = 0

        def fake_run(history, registry, **kwargs):
            nonlocal count
            count += 1
            if count == 1:
                raise KeyboardInterrupt
            return ("answer", False)

        with (
            self._patch_session(["interrupted", "ok", "/q"]),
            patch("smolcode.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        assert count == 2

    def test_agent_error_reported_and_loop_continues(self, capsys):
        results = [TransportError(500, "boom"), ("recovered", False)]

        def fake_run(history, registry, **kwargs):
            item = results.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        with (
            self._patch_session(["one", "two", "/q"]),
            patch("smolcode.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())

        captured = capsys.readouterr()
        assert "API error: 500 - boom" in captured.err
        assert "recovered" in captured.out

    def test_answer_on_stdout_not_stderr(self, capsys):
        with (
            self._patch_session(["hello", "/q"]),
            patch("smolcode.agent.run_agent_loop", return_value=("the answer", False)),
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        captured = capsys.readouterr()
        assert "the answer" in captured.out
        assert "the answer" not in captured.err

    def test_clear_in_repl(self):
        seen = []

        def fake_run(history, registry, **kwargs):
            seen.append(len(history))
            return ("answer", False)

        inputs = ["first", "/c", "/clear", "second", "/q"]
        with (
            self._patch_session(inputs),
            patch("smolcode.agent.run_agent_loop", side_effect=fake_run),
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        # After clearing, the second question starts from an empty conversation
        assert seen == [1, 1]

    def test_help_in_repl(self, capsys):
        with (
            self._patch_session(["/help", "/q"]),
            patch("smolcode.agent.run_agent_loop") as mock_loop,
        ):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs())
        assert mock_loop.call_count == 0
        assert "/clear" in capsys.readouterr().err

    def test_verbose_shows_banner(self, capsys):
        with self._patch_session(["/q"]):
            repl_loop(History(), ToolRegistry(), **_loop_kwargs(verbose=True))
        assert "Interactive mode" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Slash commands
# ---------------------------------------------------------------------------


class TestReplCommands:
    def test_help_prints_commands(self, capsys):
        _repl_help()
        err = capsys.readouterr().err
        assert "/help" in err
        assert "/q" in err

    def test_clear_resets_messages(self, capsys):
        history = History([user_message("a"), assistant_message([text_block("b")])])
        _repl_clear(history)
        assert len(history) == 0
        assert "2 messages removed" in capsys.readouterr().err

    def test_clear_twice(self, capsys):
        history = History([user_message("a")])
        _repl_clear(history)
        _repl_clear(history)
        assert len(history) == 0
        assert "0 messages removed" in capsys.readouterr().err
