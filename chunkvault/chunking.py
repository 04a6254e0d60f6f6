"""Chunker contract and the default source chunker."""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from charset_normalizer import from_bytes

from .checksum import chunk_checksum
from .errors import ExtractionError
from .text import Messages

DEFAULT_WINDOW_LINES = 60
DEFAULT_WINDOW_OVERLAP = 10

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".swift": "swift",
    ".scala": "scala",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".md": "markdown",
    ".rst": "restructuredtext",
    ".txt": "text",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".html": "html",
    ".css": "css",
    ".vue": "vue",
    ".svelte": "svelte",
}
DEFAULT_INCLUDE_PATTERNS: tuple[str, ...] = tuple(f"*{ext}" for ext in LANGUAGE_BY_EXTENSION)


@dataclass(slots=True)
class ExtractedChunk:
    id: str
    content: str
    start_line: int
    end_line: int
    language: str
    chunk_type: str = "block"
    name: str | None = None
    signature: str | None = None
    functions: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)


class Chunker(Protocol):
    """Split one file into chunks; raise ExtractionError for that file alone."""

    def chunk_file(self, path: Path) -> list[ExtractedChunk]:
        ...


def detect_language(path: Path | str) -> str:
    return LANGUAGE_BY_EXTENSION.get(Path(path).suffix.lower(), "text")


def read_source(path: Path) -> str:
    """Return the decoded text of *path*, detecting its encoding."""

    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise ExtractionError(
            Messages.ERROR_EXTRACT_READ.format(path=path, reason=exc.strerror or exc),
            path=str(path),
        ) from exc
    if not raw:
        return ""
    if b"\x00" in raw[:8192]:
        raise ExtractionError(Messages.ERROR_EXTRACT_DECODE.format(path=path), path=str(path))
    best = from_bytes(raw).best()
    if best is None:
        raise ExtractionError(Messages.ERROR_EXTRACT_DECODE.format(path=path), path=str(path))
    return str(best).replace("\r\n", "\n")


class CodeChunker:
    """Default chunker: Python by AST, everything else by overlapping line windows."""

    def __init__(
        self,
        *,
        window_lines: int = DEFAULT_WINDOW_LINES,
        overlap: int = DEFAULT_WINDOW_OVERLAP,
    ) -> None:
        self.window_lines = max(int(window_lines), 1)
        self.overlap = min(max(int(overlap), 0), self.window_lines - 1)

    def chunk_file(self, path: Path) -> list[ExtractedChunk]:
        path = Path(path)
        source = read_source(path)
        if not source.strip():
            return []
        language = detect_language(path)
        if language == "python":
            chunks = _python_chunks(path, source)
            if chunks is not None:
                return chunks
        return self._window_chunks(path, source, language)

    def _window_chunks(self, path: Path, source: str, language: str) -> list[ExtractedChunk]:
        lines = source.splitlines()
        chunks: list[ExtractedChunk] = []
        step = self.window_lines - self.overlap
        start = 0
        while start < len(lines):
            end = min(start + self.window_lines, len(lines))
            text = "\n".join(lines[start:end]).strip()
            if text:
                chunks.append(
                    _make_chunk(path, text, start + 1, end, language, chunk_type="block")
                )
            if end >= len(lines):
                break
            start += step
        return chunks


def _make_chunk(
    path: Path,
    content: str,
    start_line: int,
    end_line: int,
    language: str,
    **extra,
) -> ExtractedChunk:
    return ExtractedChunk(
        id=chunk_checksum(str(path), content, start_line, end_line),
        content=content,
        start_line=start_line,
        end_line=end_line,
        language=language,
        **extra,
    )


def _imported_modules(module: ast.Module) -> list[str]:
    names: set[str] = set()
    for node in module.body:
        if isinstance(node, ast.Import):
            names.update(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            base = "." * node.level + (node.module or "")
            names.add(base)
    return sorted(name for name in names if name)


def _called_names(node: ast.AST) -> list[str]:
    names: set[str] = set()
    for child in ast.walk(node):
        if not isinstance(child, ast.Call):
            continue
        func = child.func
        if isinstance(func, ast.Name):
            names.add(func.id)
        elif isinstance(func, ast.Attribute):
            names.add(func.attr)
    return sorted(names)


def _python_chunks(path: Path, source: str) -> list[ExtractedChunk] | None:
    """Return AST chunks for Python source, or None when it does not parse."""

    try:
        module = ast.parse(source)
    except SyntaxError:
        return None

    lines = source.splitlines()
    max_line = len(lines)
    imports = _imported_modules(module)
    exported = [
        node.name
        for node in module.body
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef))
        and not node.name.startswith("_")
    ]

    def clamp(value: int) -> int:
        return min(max(value, 1), max_line)

    def start_of(node) -> int:
        start = node.lineno
        for deco in getattr(node, "decorator_list", None) or []:
            start = min(start, deco.lineno)
        return clamp(start)

    def end_of(node) -> int:
        return clamp(getattr(node, "end_lineno", None) or node.lineno)

    def slice_lines(start: int, end: int) -> str:
        return "\n".join(lines[start - 1 : end]).strip()

    def signature_of(node) -> str:
        return lines[node.lineno - 1].strip().rstrip(":")

    chunks: list[ExtractedChunk] = []

    def add_module_chunk(start: int, end: int) -> None:
        text = slice_lines(start, end)
        if not text:
            return
        chunks.append(
            _make_chunk(
                path,
                text,
                start,
                end,
                "python",
                chunk_type="module",
                imports=imports,
                exports=exported,
            )
        )

    def add_class_block(class_name: str, start: int, end: int) -> None:
        # Class attributes and statements outside any method.
        if start > end:
            return
        text = slice_lines(start, end)
        if not text:
            return
        chunks.append(
            _make_chunk(
                path,
                text,
                start,
                end,
                "python",
                chunk_type="block",
                name=class_name,
                classes=[class_name],
                imports=imports,
            )
        )

    symbols = sorted(
        (
            node
            for node in module.body
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef))
        ),
        key=start_of,
    )
    cursor = 1
    for node in symbols:
        start, end = start_of(node), end_of(node)
        if cursor <= start - 1:
            add_module_chunk(cursor, start - 1)
        cursor = end + 1

        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            chunks.append(
                _make_chunk(
                    path,
                    slice_lines(start, end),
                    start,
                    end,
                    "python",
                    chunk_type="function",
                    name=node.name,
                    signature=signature_of(node),
                    functions=[node.name],
                    imports=imports,
                    dependencies=_called_names(node),
                )
            )
            continue

        methods = [
            child
            for child in node.body
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef))
        ]
        header_end = end if not methods else max(start, start_of(methods[0]) - 1)
        chunks.append(
            _make_chunk(
                path,
                slice_lines(start, header_end),
                start,
                header_end,
                "python",
                chunk_type="class",
                name=node.name,
                signature=signature_of(node),
                classes=[node.name],
                functions=[method.name for method in methods],
                imports=imports,
                dependencies=sorted(
                    {base.id for base in node.bases if isinstance(base, ast.Name)}
                ),
            )
        )
        body_cursor = header_end + 1
        for method in methods:
            method_start, method_end = start_of(method), end_of(method)
            add_class_block(node.name, body_cursor, method_start - 1)
            body_cursor = method_end + 1
            chunks.append(
                _make_chunk(
                    path,
                    slice_lines(method_start, method_end),
                    method_start,
                    method_end,
                    "python",
                    chunk_type="method",
                    name=f"{node.name}.{method.name}",
                    signature=signature_of(method),
                    functions=[method.name],
                    classes=[node.name],
                    imports=imports,
                    dependencies=_called_names(method),
                )
            )
        add_class_block(node.name, body_cursor, end)

    if cursor <= max_line:
        add_module_chunk(cursor, max_line)
    return chunks
