"""
Configuration management for clion.

This module centralizes loading of configuration values from environment
variables and an optional JSON configuration file.  It defines sane
defaults and provides an interface for the rest of the application to
query these settings.

The configuration file `clion_config.json`, looked up in the project
root, may contain three sections::

    {
      "provider": {"provider": "gemini", "model": "gemini-2.0-flash"},
      "context": {"max_context_size": 6000, "exclude_patterns": ["*.pb.cc"]},
      "session_dir": "~/.clion/sessions"
    }

Values from the environment override the file.  If the file is absent or
malformed, defaults are used.
"""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .relevance import AnalysisOptions

logger = logging.getLogger(__name__)

CONFIG_FILE = "clion_config.json"

DEFAULT_MAX_TOKENS = 8192
DEFAULT_TEMPERATURE = 0.1
DEFAULT_TIMEOUT_SECONDS = 60.0


class Provider(str, enum.Enum):
    """Supported LLM backends."""

    OPENROUTER = "openrouter"
    REQUESTY = "requesty"
    OPENAI = "openai"
    GEMINI = "gemini"
    CUSTOM = "custom"


DEFAULT_MODELS: Dict[Provider, str] = {
    Provider.OPENROUTER: "openai/gpt-4o-mini",
    Provider.REQUESTY: "openai/gpt-4o-mini",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.GEMINI: "gemini-2.0-flash",
    Provider.CUSTOM: "gpt-4o-mini",
}

API_KEY_ENV_VARS: Dict[Provider, str] = {
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
    Provider.REQUESTY: "REQUESTY_API_KEY",
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.GEMINI: "GEMINI_API_KEY",
    Provider.CUSTOM: "CLION_API_KEY",
}


@dataclass
class ContextOptions:
    """Options controlling how `@file` references are expanded.

    Attributes
    ----------
    max_context_size: int
        Budget, in estimated tokens (`ceil(len / 4)`), for a single
        rendered inclusion.  Larger inclusions are truncated when
        `truncate_large_files` is set.

    truncate_large_files: bool
        Keep a head and tail excerpt of oversized files instead of the
        whole content.

    include_line_numbers: bool
        Prefix each included line with its 1-based number.

    file_header_format: str
        Header written before included content.  `{path}` is replaced
        with the path relative to the project root.

    exclude_patterns: List[str]
        Glob patterns (only `*` is special) matched against the file name
        and the resolved path.  Matching files are not included.

    enable_intelligent_selection: bool
        Score each file against the prompt and substitute a summary when
        it falls below `analysis.relevance_threshold`.

    show_relevance_info: bool
        Prefix intelligently selected content with its relevance score.

    enable_memory_integration: bool
        Prepend context from relevant memory nodes.

    max_memory_nodes: int
        Upper bound on auto-discovered memory nodes.

    min_memory_importance: int
        Importance floor (0-100) for auto-discovered memory nodes.
    """

    max_context_size: int = 8000
    truncate_large_files: bool = True
    include_line_numbers: bool = False
    file_header_format: str = "// File: {path}\n"
    exclude_patterns: List[str] = field(default_factory=list)
    enable_intelligent_selection: bool = False
    show_relevance_info: bool = False
    analysis: AnalysisOptions = field(default_factory=AnalysisOptions)
    enable_memory_integration: bool = False
    max_memory_nodes: int = 5
    min_memory_importance: int = 30

    @property
    def relevance_threshold(self) -> float:
        return self.analysis.relevance_threshold

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ContextOptions":
        data = dict(data)
        analysis_data = data.pop("analysis", {}) or {}
        if "relevance_threshold" in data:
            analysis_data.setdefault("relevance_threshold", data.pop("relevance_threshold"))
        if "stop_words" in analysis_data:
            analysis_data["stop_words"] = frozenset(analysis_data["stop_words"])
        return ContextOptions(
            analysis=AnalysisOptions(**_known_fields(analysis_data, AnalysisOptions)),
            **_known_fields(data, ContextOptions),
        )


@dataclass
class ProviderConfig:
    """Settings for the LLM backend."""

    provider: Provider = Provider.OPENROUTER
    api_key: Optional[str] = None
    model: str = ""
    custom_endpoint: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE

    def __post_init__(self) -> None:
        self.provider = Provider(self.provider)
        if not self.model:
            self.model = DEFAULT_MODELS[self.provider]


@dataclass
class ClionConfig:
    """Top-level configuration.

    Attributes
    ----------
    provider: ProviderConfig
        LLM backend settings.  `provider.api_key` is None when no key was
        found, in which case only context assembly is available.

    context: ContextOptions
        Defaults for `@file` expansion.

    home_dir: Path
        Root for clion's per-user state (`~/.clion` unless `CLION_HOME`).

    session_dir: Path
        Directory holding one JSON document per session.

    config_path: Path
        File this object was loaded from, if any.  Retained for logging.
    """

    provider: ProviderConfig
    context: ContextOptions
    home_dir: Path
    session_dir: Path
    config_path: Optional[Path] = None

    @property
    def checkpoint_dir(self) -> Path:
        return self.home_dir / "checkpoints"

    @property
    def memory_dir(self) -> Path:
        return self.home_dir / "memory"

    @property
    def llm_enabled(self) -> bool:
        return bool(self.provider.api_key)

    @staticmethod
    def load(base_dir: Path, environ: Optional[Dict[str, str]] = None) -> "ClionConfig":
        """Load configuration from `clion_config.json` and the environment.

        Parameters
        ----------
        base_dir: Path
            Project root scanned for `clion_config.json`.

        environ: dict, optional
            Environment mapping; defaults to `os.environ`.

        Returns
        -------
        ClionConfig
            A populated configuration object.
        """
        env = os.environ if environ is None else environ
        config_path = base_dir / CONFIG_FILE
        data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                with config_path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("top-level JSON value must be an object")
            except (OSError, ValueError) as exc:
                logger.warning("Failed to parse %s: %s; using defaults.", config_path, exc)
                data = {}

        provider_data = dict(data.get("provider") or {})
        if env.get("CLION_PROVIDER"):
            provider_data["provider"] = env["CLION_PROVIDER"].lower()
        if env.get("CLION_MODEL"):
            provider_data["model"] = env["CLION_MODEL"]
        if env.get("CLION_ENDPOINT"):
            provider_data["custom_endpoint"] = env["CLION_ENDPOINT"]
        try:
            provider = ProviderConfig(**_known_fields(provider_data, ProviderConfig))
        except ValueError as exc:
            logger.warning("Invalid provider settings (%s); using defaults.", exc)
            provider = ProviderConfig()
        if not provider.api_key:
            provider.api_key = env.get("CLION_API_KEY") or env.get(API_KEY_ENV_VARS[provider.provider])

        context = ContextOptions.from_dict(data.get("context") or {})

        home_dir = Path(env.get("CLION_HOME") or Path.home() / ".clion").expanduser()
        session_dir_value = env.get("CLION_SESSION_DIR") or data.get("session_dir")
        session_dir = Path(session_dir_value).expanduser() if session_dir_value else home_dir / "sessions"

        return ClionConfig(
            provider=provider,
            context=context,
            home_dir=home_dir,
            session_dir=session_dir,
            config_path=config_path if config_path.exists() else None,
        )


def _known_fields(data: Dict[str, Any], cls: type) -> Dict[str, Any]:
    """Drop keys that are not fields of the dataclass `cls`."""
    valid = {f.name for f in fields(cls)}
    unknown = set(data) - valid - {"analysis"}
    if unknown:
        logger.debug("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return {k: v for k, v in data.items() if k in valid}
