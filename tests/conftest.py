"""Shared test fixtures for clion."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from clion.checkpoints import JsonCheckpointStore
from clion.memory import JsonMemoryStore
from clion.session import Session, SessionStore
from clion.tokens import TokenCounter, heuristic_tokens

_ENV_VARS = (
    "CLION_PROVIDER",
    "CLION_MODEL",
    "CLION_ENDPOINT",
    "CLION_API_KEY",
    "CLION_SESSION_DIR",
    "CLION_HOME",
    "CLION_LOGLEVEL",
    "OPENROUTER_API_KEY",
    "REQUESTY_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project(tmp_path):
    """A small project tree with one C++ source and one Python module."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "a.cpp").write_text("void foo() {}\n", encoding="utf-8")
    (root / "src" / "lexer.py").write_text(
        "import re\n\n\nclass Lexer:\n    def tokenize(self, text):\n        return text.split()\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture
def memory(tmp_path):
    return JsonMemoryStore(tmp_path / "memory")


@pytest.fixture
def checkpoints(tmp_path):
    return JsonCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def store(tmp_path, checkpoints, memory):
    return SessionStore(tmp_path / "sessions", checkpoints, memory)


@pytest.fixture
def make_session(store):
    """Persist a session with a fixed id (e.g. ``S1``)."""

    def _make(session_id, **fields):
        now = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        session = Session(id=session_id, **fields)
        assert store.save(session)
        return session_id

    return _make


@pytest.fixture
def token_counter():
    counter = Mock(spec=TokenCounter)
    counter.count.side_effect = heuristic_tokens
    return counter
