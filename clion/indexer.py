"""
Lightweight source-file indexer.

The indexer is intentionally shallow: it scans a file with a handful of
regular expressions to collect include/import targets, function names
and class names.  The result feeds the relevance scorer and the short
summaries the context builder substitutes for files that are not
relevant enough to include in full.  It is not a parser and will miss
or over-report names in unusual code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

_LANGUAGE_BY_EXTENSION = {
    "py": "py",
    "ts": "ts",
    "tsx": "tsx",
    "js": "js",
    "jsx": "jsx",
    "java": "java",
    "kt": "kotlin",
    "go": "go",
    "rs": "rust",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hpp": "cpp",
    "m": "objectivec",
    "mm": "objectivecpp",
    "swift": "swift",
    "php": "php",
    "rb": "ruby",
    "cs": "csharp",
}

# Words that look like a call site to the C-family function pattern.
_CONTROL_WORDS = {"if", "for", "while", "switch", "return", "catch", "sizeof", "else", "do", "new", "delete"}

_C_INCLUDE = re.compile(r'#include\s*["<](.+?)[">]')
_C_FUNCTION = re.compile(r"([\w:]+)\s+([\w:]+)\s*\(([^()]*?)\)\s*(?:const\s*)?\{")
_C_CLASS = re.compile(r"\b(?:class|struct)\s+([A-Za-z_][\w:]*)\s*(?=[:{;]|final\b)")

_PY_IMPORT = re.compile(r"^\s*(?:from\s+([\w.]+)\s+import\b|import\s+([\w.]+))", re.MULTILINE)
_PY_FUNCTION = re.compile(r"^\s*(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE)
_PY_CLASS = re.compile(r"^\s*class\s+(\w+)", re.MULTILINE)

_JS_IMPORT = re.compile(r"""(?:import\s[^'"]*?from\s*|require\()\s*['"]([^'"]+)['"]""")
_JS_FUNCTION = re.compile(r"\bfunction\s+(\w+)\s*\(|\b(?:const|let)\s+(\w+)\s*=\s*(?:async\s*)?\([^)]*\)\s*=>")
_JS_CLASS = re.compile(r"\bclass\s+(\w+)")


@dataclass
class FileIndex:
    """Names collected from one source file."""

    file_path: str
    language: str = ""
    includes: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)


def detect_language(path: str) -> str:
    """Infer a language identifier from the file extension."""
    ext = Path(path).suffix.lower().lstrip(".")
    return _LANGUAGE_BY_EXTENSION.get(ext, "")


def is_binary(path: str) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\0" in f.read(1024)
    except OSError:
        return False


def index_source(text: str, file_path: str = "", language: str | None = None) -> FileIndex:
    """Index already-loaded source text."""
    lang = detect_language(file_path) if language is None else language
    index = FileIndex(file_path=file_path, language=lang)
    if lang == "py":
        index.includes = [m.group(1) or m.group(2) for m in _PY_IMPORT.finditer(text)]
        index.functions = _PY_FUNCTION.findall(text)
        index.classes = _PY_CLASS.findall(text)
    elif lang in {"js", "jsx", "ts", "tsx"}:
        index.includes = _JS_IMPORT.findall(text)
        index.functions = [a or b for a, b in _JS_FUNCTION.findall(text)]
        index.classes = _JS_CLASS.findall(text)
    else:
        index.includes = _C_INCLUDE.findall(text)
        index.functions = [
            name
            for _ret, name, _params in _C_FUNCTION.findall(text)
            if name not in _CONTROL_WORDS and _ret not in _CONTROL_WORDS
        ]
        index.classes = _C_CLASS.findall(text)
    return index


def index_file(file_path: str) -> FileIndex:
    """Index a file on disk.  Unreadable or binary files yield an empty index."""
    if is_binary(file_path):
        return FileIndex(file_path=file_path, language=detect_language(file_path))
    try:
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError:
        return FileIndex(file_path=file_path, language=detect_language(file_path))
    return index_source(text, file_path)


def _name_list(names: List[str], limit: int) -> str:
    shown = ", ".join(names[:limit])
    return shown + (" ..." if len(names) > limit else "")


def render_summary(index: FileIndex, display_path: str | None = None) -> str:
    """Render the comment block substituted for an abbreviated file."""
    lines = [f"// File: {display_path or index.file_path}"]
    if index.functions:
        lines.append(f"// Functions: {len(index.functions)} - {_name_list(index.functions, 5)}")
    if index.classes:
        lines.append(f"// Classes: {len(index.classes)} - {_name_list(index.classes, 3)}")
    if index.includes:
        lines.append(f"// Key Includes: {_name_list(index.includes, 5)}")
    lines.append(f"// Estimated content: {len(index.functions) + len(index.classes)} major elements")
    return "\n".join(lines) + "\n"
