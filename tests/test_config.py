import pytest

from splitledger.config import Config
from splitledger.errors import ConfigError


def test_secret_key_is_mandatory():
    with pytest.raises(ConfigError):
        Config({})


def test_empty_secret_key_is_rejected():
    with pytest.raises(ConfigError):
        Config({"SECRET_KEY": ""})


def test_defaults_and_overrides():
    config = Config(
        {
            "SECRET_KEY": "s3cret",
            "DB_PORT": "3307",
            "CORS_ORIGINS": "http://a.test, http://b.test,",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.SECRET_KEY == "s3cret"
    assert config.DB_PORT == 3307
    assert config.DB_HOST == "localhost"
    assert config.DB_POOL_SIZE == 10
    assert config.CORS_ORIGINS == ["http://a.test", "http://b.test"]
    assert config.LOG_LEVEL == "DEBUG"
