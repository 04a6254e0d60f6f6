import json
import os
import re

import numpy as np
import pytest
from typer.testing import CliRunner

from chunkvault import __version__
from chunkvault.cli import app
from chunkvault.config import index_dir, load_config
from chunkvault.embeddings import EmbeddingService, build_embedding_service
from chunkvault.store import open_store
from chunkvault.text import Messages

ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
KEYWORDS = ("alpha", "beta", "gamma")


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


class KeywordProvider:
    name = "keywords"

    def embed(self, texts):
        return np.asarray(
            [[text.count(word) for word in KEYWORDS] + [1] for text in texts],
            dtype=np.float32,
        )


@pytest.fixture(autouse=True)
def temp_config_home(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_file = config_dir / "config.json"
    monkeypatch.setattr("chunkvault.config.DATA_DIR", config_dir)
    monkeypatch.setattr("chunkvault.config.CONFIG_FILE", config_file)
    monkeypatch.setattr("chunkvault.config.load_dotenv", lambda *args, **kwargs: False)
    config_dir.mkdir()
    config_file.write_text(
        json.dumps(
            {
                "remote_provider": "none",
                "local_provider": "none",
                "embedding_dimension": len(KEYWORDS) + 1,
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(
        "chunkvault.cli.build_embedding_service",
        lambda config: EmbeddingService(KeywordProvider(), None, dimension=config.embedding_dimension),
    )
    return config_file


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    (root / "alpha.py").write_text("def alpha():\n    return 'alpha'\n", encoding="utf-8")
    (root / "beta.py").write_text("def beta():\n    return 'beta'\n", encoding="utf-8")
    return root


def _bump_mtime(path, seconds=5):
    stat = path.stat()
    shifted = stat.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(stat.st_atime_ns, shifted))


def _invoke(*args):
    result = CliRunner().invoke(app, list(args))
    return result, strip_ansi(result.output)


def _open(root):
    return open_store(load_config(), root, check_dimension=False)


def test_version_flag():
    result, output = _invoke("--version")

    assert result.exit_code == 0
    assert f"chunkvault v{__version__}" in output


def test_index_then_rerun_is_up_to_date(project):
    result, output = _invoke("index", "--path", str(project))

    assert result.exit_code == 0, output
    assert "Indexed 2 files into 2 chunks" in output
    assert "100% " in output

    result, output = _invoke("index", "--path", str(project))

    assert result.exit_code == 0
    assert Messages.INFO_INDEX_UP_TO_DATE in output

    store = _open(project)
    try:
        assert store.count_files() == 2
        assert store.count_chunks() == 2
    finally:
        store.close()


def test_index_reports_deleted_files(project):
    _invoke("index", "--path", str(project))
    (project / "beta.py").unlink()

    result, output = _invoke("index", "--path", str(project))

    assert result.exit_code == 0
    assert Messages.INFO_INDEX_DELETED.format(deleted=1, cleaned=1) in output


def test_index_empty_directory(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()

    result, output = _invoke("index", "--path", str(empty))

    assert result.exit_code == 0
    assert Messages.INFO_NO_FILES in output


def test_index_missing_directory_fails(tmp_path):
    result, _ = _invoke("index", "--path", str(tmp_path / "missing"))

    assert result.exit_code == 1


def test_index_with_placeholder_embeddings_warns(project, monkeypatch):
    monkeypatch.setattr("chunkvault.cli.build_embedding_service", build_embedding_service)

    result, output = _invoke("index", "--path", str(project))

    assert result.exit_code == 0
    assert "placeholder" in output.lower()


def test_search_outputs_table(project):
    _invoke("index", "--path", str(project))

    result, output = _invoke("search", "alpha", "--path", str(project), "--top", "1")

    assert result.exit_code == 0, output
    assert Messages.TABLE_SEARCH_TITLE in output
    assert "./alpha.py:1-2" in output
    assert "./beta.py" not in output


def test_search_rejects_empty_query(project):
    result, output = _invoke("search", "   ", "--path", str(project))

    assert result.exit_code == 1
    assert Messages.ERROR_EMPTY_QUERY in output


def test_search_on_unindexed_directory(project):
    result, output = _invoke("search", "alpha", "--path", str(project))

    assert result.exit_code == 0
    assert Messages.INFO_NO_RESULTS in output


def test_stats_validate_and_cleanup(project):
    _invoke("index", "--path", str(project))

    result, output = _invoke("stats", "--path", str(project))
    assert result.exit_code == 0
    assert Messages.TABLE_STATS_TITLE in output
    assert "Schema version" in output
    assert "python" in output

    result, output = _invoke("validate", "--path", str(project))
    assert result.exit_code == 0
    assert Messages.INFO_VALIDATE_OK in output

    result, output = _invoke("cleanup", "--path", str(project))
    assert result.exit_code == 0
    assert Messages.INFO_CLEANUP_DONE.format(count=0) in output


def test_backup_and_restore(project):
    _invoke("index", "--path", str(project))
    result, _ = _invoke("backup", "--path", str(project))
    assert result.exit_code == 0
    backups = sorted((index_dir(project) / "backups").glob("index-backup-*.db"))
    assert len(backups) == 1

    (project / "beta.py").unlink()
    _invoke("index", "--path", str(project))

    result, output = _invoke("restore", str(backups[0]), "--path", str(project))

    assert result.exit_code == 0, output
    store = _open(project)
    try:
        assert store.count_files() == 2
    finally:
        store.close()
    assert list((index_dir(project) / "backups").glob("index-before-restore-*.db"))


def test_restore_missing_backup_fails(project, tmp_path):
    result, _ = _invoke("restore", str(tmp_path / "nope.db"), "--path", str(project))

    assert result.exit_code == 1


def test_export_to_stdout_and_file(project, tmp_path):
    _invoke("index", "--path", str(project))

    result = CliRunner().invoke(app, ["export", "--path", str(project)])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["embedding_dimension"] == len(KEYWORDS) + 1
    assert len(payload["tables"]["code_chunks"]) == 2

    target = tmp_path / "out" / "export.json"
    result, _ = _invoke("export", "--path", str(project), "--output", str(target))
    assert result.exit_code == 0
    assert json.loads(target.read_text(encoding="utf-8"))["tables"]["indexed_files"]


def test_vacuum_and_clear(project):
    _invoke("index", "--path", str(project))
    (project / "alpha.py").write_text("def alpha():\n    return 'gamma'\n", encoding="utf-8")
    _bump_mtime(project / "alpha.py")
    _invoke("index", "--path", str(project))

    result, output = _invoke("vacuum", "--path", str(project))
    assert result.exit_code == 0
    assert Messages.INFO_VACUUM_DONE.format(count=1) in output

    result, output = _invoke("clear", "--path", str(project))
    assert result.exit_code == 0
    assert Messages.INFO_CLEAR_DONE in output
    store = _open(project)
    try:
        assert store.count_chunks() == 0
        assert store.count_files() == 0
    finally:
        store.close()


def test_config_updates_and_show():
    result, output = _invoke("config", "--set-backend", "remote", "--set-dimension", "768", "--show")

    assert result.exit_code == 0
    assert Messages.INFO_CONFIG_UPDATED in output
    assert "Store backend: remote" in output
    assert "Embedding dimension: 768" in output
    assert load_config().store_backend == "remote"


def test_config_rejects_unknown_backend():
    result, output = _invoke("config", "--set-backend", "cloud")

    assert result.exit_code == 1
    assert "Unsupported store backend" in output
    assert load_config().store_backend == "local"


def test_remote_backend_without_credentials_fails(project, monkeypatch):
    for name in ("CLOUDFLARE_ACCOUNT_ID", "CLOUDFLARE_API_KEY", "CHUNKVAULT_D1_DATABASE_ID"):
        monkeypatch.delenv(name, raising=False)
    _invoke("config", "--set-backend", "remote")

    result, _ = _invoke("stats", "--path", str(project))

    assert result.exit_code == 1


def test_run_accepts_argv(capsys):
    from chunkvault.cli import run

    with pytest.raises(SystemExit) as excinfo:
        run(["--version"])

    assert excinfo.value.code == 0
    assert f"chunkvault v{__version__}" in capsys.readouterr().out
