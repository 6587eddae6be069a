"""Tests for configuration loading."""

import os

import pytest
import yaml

from provisio.config import (
    DEFAULT_CONFIG,
    ProvisioConfig,
    get_provisio_home,
    load_config,
    write_default_config,
)
from provisio.errors import ConfigError


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("PROVISIO_HOME", str(tmp_path))
    return tmp_path


class TestProvisioHome:
    def test_env_override(self, home):
        assert get_provisio_home() == home

    def test_default(self, monkeypatch):
        monkeypatch.delenv("PROVISIO_HOME", raising=False)
        assert get_provisio_home().parts[-2:] == (".config", "provisio")


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file(self, home):
        with pytest.raises(FileNotFoundError, match="provisio config.yaml not found"):
            load_config()

    def test_valid_file(self, home):
        (home / "config.yaml").write_text(yaml.safe_dump({
            "default_timeout_s": 120,
            "log_level": "debug",
            "runs_dir": str(home / "runs"),
        }))
        config = load_config()
        assert config.default_timeout_s == 120.0
        assert config.log_level == "DEBUG"
        assert config.runs_path == home / "runs"
        # Unset keys keep their defaults
        assert config.max_backoff_s == DEFAULT_CONFIG.max_backoff_s

    def test_empty_file_is_defaults(self, home):
        (home / "config.yaml").write_text("")
        assert load_config() == ProvisioConfig()

    def test_env_file_loaded(self, home, monkeypatch):
        monkeypatch.delenv("PROVISIO_TEST_PASSWORD", raising=False)
        (home / "secrets.env").write_text("PROVISIO_TEST_PASSWORD=hunter2\n")
        (home / "config.yaml").write_text("env_file: secrets.env\n")
        try:
            load_config()
            assert os.environ["PROVISIO_TEST_PASSWORD"] == "hunter2"
        finally:
            os.environ.pop("PROVISIO_TEST_PASSWORD", None)

    def test_missing_env_file_ignored(self, home):
        (home / "config.yaml").write_text("env_file: nope.env\n")
        assert load_config().env_file == "nope.env"

    @pytest.mark.parametrize("content,match", [
        ("default_timeout_s: fast\n", "must be a number"),
        ("default_timeout_s: 0\n", "must be positive"),
        ("grace_period_s: -1\n", "must be positive"),
        ("log_level: LOUD\n", "Invalid log_level"),
        ("log_format: xml\n", "Invalid log_format"),
        ("colour: blue\n", "Unknown config keys: colour"),
        ("- a\n", "must contain a mapping"),
        ("key: [unclosed\n", "Invalid YAML"),
    ])
    def test_invalid(self, home, content, match):
        (home / "config.yaml").write_text(content)
        with pytest.raises(ConfigError, match=match):
            load_config()

    def test_zero_grace_period_allowed(self):
        assert ProvisioConfig(grace_period_s=0).grace_period_s == 0.0


class TestWriteDefaultConfig:
    def test_writes_loadable_defaults(self, home):
        path = write_default_config()
        assert path == home / "config.yaml"
        assert load_config() == DEFAULT_CONFIG

    def test_refuses_overwrite(self, home):
        write_default_config()
        with pytest.raises(FileExistsError):
            write_default_config()

    def test_force(self, home):
        (home / "config.yaml").write_text("log_level: ERROR\n")
        write_default_config(force=True)
        assert load_config().log_level == "INFO"
