"""Tests for configuration loading."""

import json

import pytest

from memledger.config import LedgerConfig, StoreConfig, load_config


class TestDefaults:
    def test_paths_derive_from_home(self, tmp_path):
        config = LedgerConfig(home=tmp_path)

        assert config.key_dir == tmp_path / "keys"
        assert config.kernel_path == tmp_path / "identity-kernel.json"
        assert config.index_path == tmp_path / "index.db"
        assert config.store.local_path == tmp_path / "storage"

    def test_home_from_environment(self, isolated_home):
        assert LedgerConfig().home == isolated_home

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown store provider"):
            StoreConfig(provider="floppy")

    def test_fetch_concurrency_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            LedgerConfig(home=tmp_path, fetch_concurrency=0)


class TestLoadConfig:
    """Tests for config.json and environment overrides."""

    def test_no_file(self, isolated_home):
        config = load_config()

        assert config.home == isolated_home
        assert config.store.provider == "local"
        assert config.log_level == "INFO"

    def test_reads_config_file(self, tmp_path):
        (tmp_path / "config.json").write_text(
            json.dumps(
                {
                    "fetch_concurrency": 8,
                    "storage": {
                        "provider": "ipfs",
                        "endpoint": "http://127.0.0.1:5001",
                        "gateways": ["https://ipfs.io/ipfs/"],
                    },
                }
            )
        )

        config = load_config(tmp_path)

        assert config.fetch_concurrency == 8
        assert config.store.provider == "ipfs"
        assert config.store.endpoint == "http://127.0.0.1:5001"
        assert config.store.gateways == ["https://ipfs.io/ipfs/"]

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        (tmp_path / "config.json").write_text(
            json.dumps({"storage": {"provider": "local", "pinata_api_key": "from-file"}})
        )
        monkeypatch.setenv("MEMLEDGER_STORE_PROVIDER", "arweave")
        monkeypatch.setenv("MEMLEDGER_STORE_TOKEN", "token-123")
        monkeypatch.setenv("PINATA_API_KEY", "from-env")
        monkeypatch.setenv("MEMLEDGER_LOG_LEVEL", "DEBUG")

        config = load_config(tmp_path)

        assert config.store.provider == "arweave"
        assert config.store.auth_token == "token-123"
        assert config.store.pinata_api_key == "from-env"
        assert config.log_level == "DEBUG"

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / "config.json").write_text(
            json.dumps({"colour": "blue", "storage": {"shiny": True}})
        )

        assert load_config(tmp_path).store.provider == "local"

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
    def test_unreadable_file_falls_back(self, tmp_path, content):
        (tmp_path / "config.json").write_text(content)

        assert load_config(tmp_path).store.provider == "local"

    def test_file_cannot_relocate_home(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"home": "/somewhere/else"}))

        assert load_config(tmp_path).home == tmp_path
