"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest

from clion import cli
from clion.errors import HTTPStatusError, UserDeclinedError
from clion.providers import LLMResponse


@pytest.fixture
def home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("CLION_HOME", str(home))
    return home


def run(project, *args):
    return cli.main(["--root", str(project), "--log-level", "ERROR", *args])


class TestContextCommand:
    def test_prints_expanded_prompt(self, project, home, capsys):
        assert run(project, "context", "Explain", "@file", "src/a.cpp") == 0
        out = capsys.readouterr().out
        assert "Explain // File: src/a.cpp\nvoid foo() {}" in out

    def test_smart_mode_summarizes(self, project, home, capsys):
        (project / "clion_config.json").write_text('{"context": {"relevance_threshold": 0.9}}', encoding="utf-8")
        assert run(project, "context", "--smart", "Explain @file src/a.cpp") == 0
        assert "--force to include full file" in capsys.readouterr().out

    def test_missing_root(self, tmp_path, home):
        assert cli.main(["--root", str(tmp_path / "missing"), "context", "x"]) == 1


class TestAskCommand:
    def test_requires_api_key(self, project, home):
        assert run(project, "ask", "hello") == 1

    def test_prints_reply(self, project, home, monkeypatch, capsys):
        monkeypatch.setenv("CLION_API_KEY", "sk-test")
        with patch.object(cli.RequestGovernor, "dispatch", return_value=LLMResponse(content="42")) as dispatch:
            assert run(project, "ask", "What is @file src/a.cpp about") == 0
        assert capsys.readouterr().out.strip() == "42"
        sent = dispatch.call_args.args[0]
        assert "void foo() {}" in sent

    def test_declined_exit_code(self, project, home, monkeypatch):
        monkeypatch.setenv("CLION_API_KEY", "sk-test")
        with patch.object(cli.RequestGovernor, "dispatch", side_effect=UserDeclinedError("Request cancelled by user")):
            assert run(project, "ask", "hello") == 2

    def test_request_error_exit_code(self, project, home, monkeypatch):
        monkeypatch.setenv("CLION_API_KEY", "sk-test")
        with patch.object(cli.RequestGovernor, "dispatch", side_effect=HTTPStatusError(500, "boom")):
            assert run(project, "ask", "hello") == 1


class TestSessionsCommand:
    def test_new_list_show_delete(self, project, home, capsys):
        assert run(project, "sessions", "new", "--name", "Parser work", "--tag", "cpp") == 0
        session_id = capsys.readouterr().out.strip()

        assert run(project, "sessions", "list") == 0
        listing = capsys.readouterr().out
        assert f"* {session_id}" in listing
        assert "Parser work" in listing

        assert run(project, "sessions", "show", session_id) == 0
        assert "Tags: cpp" in capsys.readouterr().out

        assert run(project, "sessions", "delete", session_id) == 0
        assert run(project, "sessions", "show", session_id) == 1

    def test_tree_and_checkpoint(self, project, home, capsys):
        run(project, "sessions", "new")
        parent = capsys.readouterr().out.strip()
        run(project, "sessions", "new", "--parent", parent)
        child = capsys.readouterr().out.strip()

        assert run(project, "sessions", "tree", child) == 0
        assert capsys.readouterr().out.splitlines() == [parent, "  " + child]

        assert run(project, "sessions", "checkpoint", child, "start") == 0
        checkpoint_id = capsys.readouterr().out.strip()
        assert run(project, "sessions", "restore", checkpoint_id) == 0
        assert f"Session: {child}" in capsys.readouterr().out

    def test_delete_unknown(self, project, home):
        assert run(project, "sessions", "delete", "session_missing") == 1

    def test_cleanup(self, project, home, capsys):
        assert run(project, "sessions", "cleanup", "30") == 0
        assert "Removed 0 sessions" in capsys.readouterr().out


class TestInvalidInput:
    def test_bad_session_id(self, project, home):
        assert run(project, "sessions", "show", "../x") == 1

    def test_custom_provider_without_endpoint(self, project, home, monkeypatch):
        monkeypatch.setenv("CLION_PROVIDER", "custom")
        monkeypatch.setenv("CLION_API_KEY", "sk-test")
        assert run(project, "ask", "--yes", "hello") == 1
