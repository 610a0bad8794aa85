# rulekeeper:domain=rules
"""Language detection for target files (extension first, then shebang)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rulekeeper.rules.errors import LanguageDetectionError

if TYPE_CHECKING:
    from pathlib import Path

_EXTENSION_MAP: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".swift": "swift",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".scala": "scala",
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "zsh",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".md": "markdown",
    ".markdown": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".xml": "xml",
    ".dart": "dart",
    ".lua": "lua",
    ".ex": "elixir",
    ".exs": "elixir",
}

_FILENAME_MAP: dict[str, str] = {
    "Dockerfile": "dockerfile",
    "Makefile": "make",
    "CMakeLists.txt": "cmake",
}

_SHEBANG_MAP: dict[str, str] = {
    "python": "python",
    "bash": "bash",
    "sh": "bash",
    "zsh": "zsh",
    "node": "javascript",
    "ruby": "ruby",
    "perl": "perl",
}


def detect_language(path: Path, content: str) -> str:
    """Return a lowercase language name for *path*.

    Raises
    ------
    LanguageDetectionError
        When neither the file name, extension nor a shebang line identifies
        the language.
    """
    if path.name in _FILENAME_MAP:
        return _FILENAME_MAP[path.name]

    language = _EXTENSION_MAP.get(path.suffix.lower())
    if language is not None:
        return language

    first_line = content.split("\n", 1)[0]
    if first_line.startswith("#!"):
        parts = first_line[2:].strip().split()
        if parts:
            # "#!/usr/bin/env python3" -> python3; "#!/bin/sh" -> sh
            interpreter = parts[-1] if parts[0].endswith("/env") and len(parts) > 1 else parts[0]
            interpreter = interpreter.rsplit("/", 1)[-1].rstrip("0123456789.")
            if interpreter in _SHEBANG_MAP:
                return _SHEBANG_MAP[interpreter]

    msg = f"cannot detect language for {path}"
    raise LanguageDetectionError(msg)
