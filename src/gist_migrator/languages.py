"""
File extension -> highlighting language lookup for migrated gist files.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

DEFAULT_LANGUAGE: Final[str] = "text"

EXTENSION_LANGUAGES: Final[dict[str, str]] = {
    ".go": "go",
    ".py": "python",
    ".js": "javascript",
    ".ts": "typescript",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".rs": "rust",
    ".scala": "scala",
    ".sh": "bash",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".txt": "text",
}


def detect_language(filename: str) -> str:
    """Return the language for a filename, `text` when the extension is unknown."""
    suffix = PurePosixPath(filename).suffix.lower()
    return EXTENSION_LANGUAGES.get(suffix, DEFAULT_LANGUAGE)
