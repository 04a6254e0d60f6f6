import json

import pytest

import chunkvault.config as config_module
from chunkvault.config import (
    Config,
    DEFAULT_EXCLUDE_PATTERNS,
    config_dir_context,
    config_from_mapping,
    index_dir,
    index_key,
    load_config,
    resolve_account_id,
    resolve_backup_dir,
    resolve_store_path,
    save_config,
    update_config,
)
from chunkvault.errors import InvalidInputError


@pytest.fixture(autouse=True)
def temp_config_home(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    monkeypatch.setattr(config_module, "DATA_DIR", config_dir)
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_dir / "config.json")
    monkeypatch.setattr(config_module, "load_dotenv", lambda *args, **kwargs: False)
    return config_dir


def test_load_config_defaults_when_missing():
    config = load_config()

    assert config == Config()
    assert config.store_backend == "local"
    assert config.exclude_patterns == DEFAULT_EXCLUDE_PATTERNS
    assert config.auto_cleanup is True


def test_save_and_load_round_trip(temp_config_home):
    config = Config(
        store_backend="remote",
        include_patterns=("*.py",),
        max_file_size=2048,
        cloudflare_account_id="acct",
    )

    save_config(config)
    raw = json.loads((temp_config_home / "config.json").read_text(encoding="utf-8"))
    loaded = load_config()

    assert raw["store_backend"] == "remote"
    assert raw["include_patterns"] == ["*.py"]
    assert "embedding_dimension" not in raw
    assert loaded.store_backend == "remote"
    assert loaded.include_patterns == ("*.py",)
    assert loaded.max_file_size == 2048
    assert loaded.cloudflare_account_id == "acct"


def test_update_config_merges_and_validates():
    update_config(remote_provider="none", embedding_dimension=768)
    config = update_config(max_file_size=10)

    assert config.remote_provider == "none"
    assert config.embedding_dimension == 768
    assert load_config().max_file_size == 10

    with pytest.raises(InvalidInputError):
        update_config(store_backend="cloud")
    with pytest.raises(InvalidInputError):
        update_config(local_provider="gpu")


def test_config_from_mapping_coerces_and_keeps_unknown_keys():
    config = config_from_mapping(
        {
            "store_backend": "SQL",
            "include_patterns": "*.md",
            "incremental": 0,
            "storage_batch_size": "25",
            "custom": {"a": 1},
        }
    )

    assert config.store_backend == "local"
    assert config.include_patterns == ("*.md",)
    assert config.incremental is False
    assert config.storage_batch_size == 25
    assert config.extra == {"custom": {"a": 1}}


def test_credentials_fall_back_to_environment(monkeypatch):
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "from-env")

    assert resolve_account_id(Config()) == "from-env"
    assert resolve_account_id(Config(cloudflare_account_id="from-config")) == "from-config"

    monkeypatch.delenv("CLOUDFLARE_ACCOUNT_ID")
    assert resolve_account_id(Config()) is None


def test_index_locations_are_stable_per_root(tmp_path, temp_config_home):
    first = tmp_path / "one"
    second = tmp_path / "two"
    first.mkdir()
    second.mkdir()

    assert index_key(first) == index_key(first / ".")
    assert index_key(first) != index_key(second)
    assert index_dir(first) == temp_config_home / "indexes" / index_key(first)
    assert resolve_store_path(Config(), first) == index_dir(first) / "index.db"
    assert resolve_backup_dir(Config(), first) == index_dir(first) / "backups"

    custom = tmp_path / "custom" / "store.db"
    assert resolve_store_path(Config(store_path=str(custom)), first) == custom.resolve()


def test_config_dir_context_overrides_location(tmp_path):
    override = tmp_path / "override"

    with config_dir_context(override):
        save_config(Config(remote_provider="openai"))
        assert load_config().remote_provider == "openai"

    assert (override / "config.json").exists()
    assert load_config().remote_provider == "workers-ai"


def test_set_data_dir_moves_config_file(tmp_path):
    target = tmp_path / "moved"

    config_module.set_data_dir(target)

    assert config_module.DATA_DIR == target.resolve()
    assert config_module.CONFIG_FILE == target.resolve() / "config.json"
    save_config(Config(local_provider="fastembed"))
    assert (target / "config.json").exists()

    with pytest.raises(NotADirectoryError):
        config_module.set_data_dir(target / "config.json")
