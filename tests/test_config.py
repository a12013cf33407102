"""Tests for configuration loading and validation."""

import logging

import pytest
import yaml

from revbot.config import Config, load_config

MINIMAL = {
    "gitlab": {"webhook_token": "s3cret"},
    "webex": {"access_token": "tok"},
}


def write_config(tmp_path, data) -> str:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump(data))
    return str(config_file)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("REVBOT_CONFIG_PATH", raising=False)
    monkeypatch.delenv("REVBOT__GITLAB__WEBHOOK_TOKEN", raising=False)
    monkeypatch.delenv("REVBOT__WEBEX__ACCESS_TOKEN", raising=False)


class TestConfigDefaults:
    def test_default_config_values(self):
        config = Config()
        assert config.gitlab.webhook_path == "/webhook"
        assert config.webex.api_url == "https://webexapis.com/v1"
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 4001
        assert config.retry.max_attempts == 5
        assert config.cache_ttl > 0
        assert config.dedup_window > 0

    def test_sections_are_not_shared(self):
        a, b = Config(), Config()
        a.retry.max_attempts = 9
        assert b.retry.max_attempts == 5


class TestLoadConfigValid:
    def test_load_full_config(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "gitlab": {"webhook_token": "s3cret", "webhook_path": "/hooks/gitlab"},
                "webex": {"access_token": "tok", "api_url": "https://webex.test/v1/", "timeout": 3},
                "server": {"host": "0.0.0.0", "port": 8080},
                "cache_ttl": 120,
                "dedup_window": 30,
                "retry": {"max_attempts": 3, "base_delay": 0.5, "max_delay": 4, "jitter": 0},
                "drain_timeout": 2,
            },
        )

        config = load_config(path)

        assert config.gitlab.webhook_token == "s3cret"
        assert config.gitlab.webhook_path == "/hooks/gitlab"
        assert config.webex.api_url == "https://webex.test/v1"
        assert config.webex.timeout == 3
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8080
        assert config.cache_ttl == 120
        assert config.dedup_window == 30
        assert config.retry.max_attempts == 3
        assert config.retry.base_delay == 0.5
        assert config.retry.max_delay == 4
        assert config.retry.jitter == 0
        assert config.drain_timeout == 2

    def test_partial_config_keeps_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, MINIMAL))
        assert config.retry.max_attempts == 5
        assert config.server.port == 4001

    def test_env_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REVBOT_CONFIG_PATH", write_config(tmp_path, MINIMAL))
        assert load_config().webex.access_token == "tok"

    def test_env_secrets_override_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REVBOT__GITLAB__WEBHOOK_TOKEN", "from-env")
        monkeypatch.setenv("REVBOT__WEBEX__ACCESS_TOKEN", "env-token")
        config = load_config(write_config(tmp_path, MINIMAL))
        assert config.gitlab.webhook_token == "from-env"
        assert config.webex.access_token == "env-token"

    def test_secrets_only_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REVBOT__GITLAB__WEBHOOK_TOKEN", "from-env")
        monkeypatch.setenv("REVBOT__WEBEX__ACCESS_TOKEN", "env-token")
        config = load_config(write_config(tmp_path, {}))
        assert config.gitlab.webhook_token == "from-env"

    def test_numeric_token_coerced_to_string(self, tmp_path):
        data = {"gitlab": {"webhook_token": 12345}, "webex": {"access_token": "tok"}}
        assert load_config(write_config(tmp_path, data)).gitlab.webhook_token == "12345"


class TestLoadConfigWarnings:
    def test_unknown_top_level_key(self, tmp_path, caplog):
        data = dict(MINIMAL, bogus=1)
        with caplog.at_level(logging.WARNING):
            load_config(write_config(tmp_path, data))
        assert "bogus" in caplog.text

    def test_unknown_section_key(self, tmp_path, caplog):
        data = {"gitlab": {"webhook_token": "s", "colour": "red"}, "webex": {"access_token": "t"}}
        with caplog.at_level(logging.WARNING):
            load_config(write_config(tmp_path, data))
        assert "gitlab.colour" in caplog.text


class TestLoadConfigInvalid:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="YAML mapping"):
            load_config(str(config_file))

    def test_empty_file_lacks_secrets(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        with pytest.raises(ValueError, match="webhook_token"):
            load_config(str(config_file))

    def test_missing_webex_token(self, tmp_path):
        with pytest.raises(ValueError, match="webex.access_token"):
            load_config(write_config(tmp_path, {"gitlab": {"webhook_token": "s"}}))

    def test_section_must_be_mapping(self, tmp_path):
        data = dict(MINIMAL, retry=[1, 2])
        with pytest.raises(ValueError, match="'retry' must be a mapping"):
            load_config(write_config(tmp_path, data))

    @pytest.mark.parametrize(
        "override, message",
        [
            ({"retry": {"max_attempts": 0}}, "max_attempts"),
            ({"retry": {"max_attempts": 2.5}}, "max_attempts"),
            ({"retry": {"base_delay": -1}}, "base_delay"),
            ({"retry": {"base_delay": 10, "max_delay": 1}}, "max_delay"),
            ({"cache_ttl": 0}, "cache_ttl"),
            ({"dedup_window": "long"}, "dedup_window"),
            ({"server": {"port": 70000}}, "server.port"),
            ({"server": {"port": "80"}}, "server.port"),
            ({"gitlab": {"webhook_token": "s", "webhook_path": "hook"}}, "webhook_path"),
            ({"gitlab": {"webhook_token": "s", "webhook_path": 5}}, "gitlab.webhook_path"),
            ({"webex": {"access_token": "t", "api_url": 5}}, "webex.api_url"),
            ({"server": {"host": ["0.0.0.0"]}}, "server.host"),
            ({"server": {"host": ""}}, "server.host"),
        ],
    )
    def test_invalid_values(self, tmp_path, override, message):
        data = dict(MINIMAL)
        data.update(override)
        with pytest.raises(ValueError, match=message):
            load_config(write_config(tmp_path, data))
