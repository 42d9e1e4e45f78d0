import pytest
from unittest.mock import patch
from pydantic import ValidationError

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import Settings
from redis_config import get_redis_config, should_use_redis


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("APP_ENV", raising=False)
        monkeypatch.delenv("FFMPEG_BINARY", raising=False)
        settings = Settings(_env_file=None)
        assert settings.APP_ENV == "prod"
        assert settings.FFMPEG_BINARY == "ffmpeg"
        assert settings.EVENTLOOP_ENABLED is False

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "staging")
        monkeypatch.setenv("EVENTLOOP_ENABLED", "true")
        monkeypatch.setenv("EVENTLOOP_TIMER", "2.5")
        settings = Settings(_env_file=None)
        assert settings.APP_ENV == "staging"
        assert settings.EVENTLOOP_ENABLED is True
        assert settings.EVENTLOOP_TIMER == 2.5


class TestRedisConfig:

    def test_url_without_password(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        with patch('redis_config.settings') as mock_settings:
            mock_settings.REDIS_HOST = "redis"
            mock_settings.REDIS_SERVER_PORT = 6380
            mock_settings.REDIS_DB = 2
            mock_settings.REDIS_PASSWORD = None
            mock_settings.REDIS_ENABLED = True
            mock_settings.TICK_LOCK_TIMEOUT = 60
            config = get_redis_config()
            assert should_use_redis()

        assert config["redis_url"] == "redis://redis:6380/2"
        assert config["tick_lock_timeout"] == 60

    def test_url_with_password(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        with patch('redis_config.settings') as mock_settings:
            mock_settings.REDIS_HOST = "redis"
            mock_settings.REDIS_SERVER_PORT = 6379
            mock_settings.REDIS_DB = 0
            mock_settings.REDIS_PASSWORD = "pw"
            config = get_redis_config()

        assert config["redis_url"] == "redis://:pw@redis:6379/0"

    def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:1234/5")
        assert get_redis_config()["redis_url"] == "redis://cache:1234/5"


class TestCommandLineValues:

    @pytest.mark.parametrize("value", ["my env", "prod;rm", "$(id)", "a'b"])
    def test_unsafe_environment_is_rejected(self, monkeypatch, value):
        monkeypatch.setenv("APP_ENV", value)
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_unsafe_log_prefix_is_rejected(self, monkeypatch):
        monkeypatch.setenv("FFMPEG_LOG_PREFIX", "live broadcaster")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_plain_values_are_accepted(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "staging-2.eu_west")
        assert Settings(_env_file=None).APP_ENV == "staging-2.eu_west"
