import pytest

from chunkvault.chunking import CodeChunker, detect_language, read_source
from chunkvault.errors import ExtractionError

PYTHON_SOURCE = """import os

def alpha(x):
    return helper(x)

class Beta(Base):
    attr = 1

    def method(self):
        return self.other()
"""


def test_detect_language_by_extension():
    assert detect_language("pkg/module.py") == "python"
    assert detect_language("web/App.TSX") == "typescript"
    assert detect_language("README.md") == "markdown"
    assert detect_language("Makefile") == "text"


def test_python_file_is_chunked_by_symbol(tmp_path):
    path = tmp_path / "sample.py"
    path.write_text(PYTHON_SOURCE, encoding="utf-8")

    chunks = CodeChunker().chunk_file(path)

    assert [chunk.chunk_type for chunk in chunks] == ["module", "function", "class", "method"]
    module, function, klass, method = chunks
    assert module.content == "import os"
    assert module.imports == ["os"]
    assert module.exports == ["alpha", "Beta"]
    assert (function.name, function.start_line, function.end_line) == ("alpha", 3, 4)
    assert function.signature == "def alpha(x)"
    assert function.dependencies == ["helper"]
    assert klass.name == "Beta"
    assert klass.dependencies == ["Base"]
    assert klass.functions == ["method"]
    assert (method.name, method.start_line, method.end_line) == ("Beta.method", 9, 10)
    assert method.classes == ["Beta"]
    assert method.dependencies == ["other"]
    assert all(chunk.language == "python" for chunk in chunks)


def test_class_body_between_and_after_methods_is_kept(tmp_path):
    path = tmp_path / "config.py"
    path.write_text(
        "class Settings:\n"
        "    name = 'a'\n"
        "\n"
        "    def first(self):\n"
        "        return 1\n"
        "\n"
        "    timeout = 30\n"
        "\n"
        "    def second(self):\n"
        "        return 2\n"
        "\n"
        "    retries = 3\n",
        encoding="utf-8",
    )

    chunks = CodeChunker().chunk_file(path)

    assert [chunk.chunk_type for chunk in chunks] == [
        "class",
        "method",
        "block",
        "method",
        "block",
    ]
    klass, _, middle, _, tail = chunks
    assert klass.content == "class Settings:\n    name = 'a'"
    assert (middle.content, middle.start_line, middle.end_line) == ("timeout = 30", 6, 8)
    assert (tail.content, tail.start_line, tail.end_line) == ("retries = 3", 11, 12)
    assert middle.classes == ["Settings"]
    covered = "\n".join(chunk.content for chunk in chunks)
    for statement in ("name = 'a'", "timeout = 30", "retries = 3"):
        assert statement in covered


def test_chunk_ids_are_stable_across_runs(tmp_path):
    path = tmp_path / "sample.py"
    path.write_text(PYTHON_SOURCE, encoding="utf-8")

    first = [chunk.id for chunk in CodeChunker().chunk_file(path)]
    second = [chunk.id for chunk in CodeChunker().chunk_file(path)]

    assert first == second
    assert len(set(first)) == len(first)


def test_text_file_uses_overlapping_windows(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("\n".join(f"line {idx}" for idx in range(1, 11)) + "\n", encoding="utf-8")

    chunks = CodeChunker(window_lines=4, overlap=1).chunk_file(path)

    assert [(chunk.start_line, chunk.end_line) for chunk in chunks] == [(1, 4), (4, 7), (7, 10)]
    assert chunks[0].content.splitlines()[0] == "line 1"
    assert {chunk.chunk_type for chunk in chunks} == {"block"}
    assert {chunk.language for chunk in chunks} == {"text"}


def test_python_syntax_error_falls_back_to_windows(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("def broken(:\n    pass\n", encoding="utf-8")

    chunks = CodeChunker().chunk_file(path)

    assert len(chunks) == 1
    assert chunks[0].chunk_type == "block"
    assert chunks[0].language == "python"


@pytest.mark.parametrize("content", ["", "   \n\n\t\n"])
def test_empty_files_yield_no_chunks(tmp_path, content):
    path = tmp_path / "empty.py"
    path.write_text(content, encoding="utf-8")

    assert CodeChunker().chunk_file(path) == []


def test_binary_file_raises_extraction_error(tmp_path):
    path = tmp_path / "blob.txt"
    path.write_bytes(b"\x00\x01\x02binary")

    with pytest.raises(ExtractionError):
        CodeChunker().chunk_file(path)


def test_missing_file_raises_extraction_error(tmp_path):
    with pytest.raises(ExtractionError):
        read_source(tmp_path / "missing.py")


def test_read_source_normalizes_line_endings(tmp_path):
    path = tmp_path / "dos.txt"
    path.write_bytes(b"first\r\nsecond\r\n")

    assert read_source(path) == "first\nsecond\n"
