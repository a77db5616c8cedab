"""Mapping of file name extensions to MIME types."""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import TextIO

FALLBACK_TYPES = (
    ("html", "text/html"),
    ("htm", "text/html"),
    ("css", "text/css"),
    ("js", "application/javascript"),
    ("json", "application/json"),
    ("txt", "text/plain"),
    ("xml", "text/xml"),
    ("jpg", "image/jpeg"),
    ("jpeg", "image/jpeg"),
    ("png", "image/png"),
    ("gif", "image/gif"),
    ("ico", "image/x-icon"),
    ("pdf", "application/pdf"),
    ("zip", "application/zip"),
    ("gz", "application/gzip"),
    ("mp3", "audio/mpeg"),
    ("mp4", "video/mp4"),
    ("webm", "video/webm"),
    ("svg", "image/svg+xml"),
    ("woff", "font/woff"),
    ("woff2", "font/woff2"),
)

_LINE_LIMIT = 126
_TYPE_WIDTH = 63
_EXT_WIDTH = 7
_WHITESPACE = re.compile(r"[ \t\n\r\f\v]+")


def _lines(handle: TextIO) -> Iterator[str]:
    """Yield the file's lines, splitting overlong ones into pieces."""
    for line in handle:
        while len(line) > _LINE_LIMIT:
            yield line[:_LINE_LIMIT]
            line = line[_LINE_LIMIT:]
        yield line


def _pieces(word: str, width: int) -> Iterator[str]:
    while word:
        yield word[:width]
        word = word[width:]


class MimeTypes:
    """Extension table with a default type for unknown files."""

    def __init__(self, default: str = "text/plain") -> None:
        self.default = default
        self._types: list[tuple[str, str]] = []

    def __len__(self) -> int:
        return len(self._types)

    def add(self, ext: str, mime_type: str) -> None:
        """Register a type for an extension; earlier entries take precedence."""
        self._types.append((ext, mime_type))

    def load(self, path: str) -> bool:
        """Read a mime.types file; fall back to built-in types if it cannot be opened."""
        try:
            handle = open(path, encoding="latin-1")
        except OSError:
            for ext, mime_type in FALLBACK_TYPES:
                self.add(ext, mime_type)
            return False
        with handle:
            for line in _lines(handle):
                if line.startswith("#"):
                    continue
                tokens = [token for token in _WHITESPACE.split(line) if token]
                if not tokens:
                    continue
                first = tokens[0]
                mime_type = first[:_TYPE_WIDTH]
                words = [first[_TYPE_WIDTH:]] if len(first) > _TYPE_WIDTH else []
                words.extend(tokens[1:])
                for word in words:
                    for ext in _pieces(word, _EXT_WIDTH):
                        self.add(ext, mime_type)
        return True

    def get(self, filename: str) -> str:
        """Return the MIME type for a file name, judged by its last extension."""
        base, dot, ext = filename.rpartition(".")
        if not dot:
            return self.default
        wanted = ext.lower()
        for known, mime_type in self._types:
            if known.lower() == wanted:
                return mime_type
        return self.default


def load_mime_types(path: str, default: str) -> MimeTypes:
    """Build a table from a mime.types file with the given default type."""
    table = MimeTypes(default)
    table.load(path)
    return table