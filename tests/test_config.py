import pytest
from pydantic import ValidationError

from agebridge.core import config as config_module
from agebridge.core.config import DEFAULT_SEARCH_PATH, BridgeConfig, PoolSettings, RetryPolicy

ENV_NAMES = (
    "AGEBRIDGE_HOST", "AGEBRIDGE_PORT", "AGEBRIDGE_DB", "AGEBRIDGE_USER", "AGEBRIDGE_PASSWORD",
    "AGEBRIDGE_SSLMODE", "AGEBRIDGE_SEARCH_PATH", "AGEBRIDGE_POOL_MAX_SIZE", "AGEBRIDGE_POOL_MIN_SIZE",
    "AGEBRIDGE_RETRY_MAX_ATTEMPTS", "AGEBRIDGE_ENV_FILE",
    "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD", "PGSSLMODE",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults():
    config = BridgeConfig()

    assert config.search_path == DEFAULT_SEARCH_PATH
    assert config.pool.max_size == 10
    assert config.retry.max_attempts == 3
    assert config.retry.delay == 1.0
    assert config.retry.max_delay == 5.0


def test_from_env_prefers_prefixed_names(clean_env):
    clean_env.setenv("AGEBRIDGE_HOST", "graph-db")
    clean_env.setenv("POSTGRES_HOST", "ignored")
    clean_env.setenv("POSTGRES_DB", "social")
    clean_env.setenv("AGEBRIDGE_PORT", "6543")
    clean_env.setenv("AGEBRIDGE_POOL_MAX_SIZE", "5")
    clean_env.setenv("AGEBRIDGE_POOL_MIN_SIZE", "0")
    clean_env.setenv("AGEBRIDGE_RETRY_MAX_ATTEMPTS", "4")

    config = BridgeConfig.from_env(load_dotenv=False)

    assert config.host == "graph-db"
    assert config.dbname == "social"
    assert config.port == 6543
    assert config.pool.max_size == 5
    assert config.pool.min_size == 0
    assert config.retry.max_attempts == 4


def test_from_env_rejects_invalid_values(clean_env):
    clean_env.setenv("AGEBRIDGE_POOL_MAX_SIZE", "0")

    with pytest.raises(ValidationError):
        BridgeConfig.from_env(load_dotenv=False)


def test_env_file_does_not_override_existing_variables(clean_env, tmp_path):
    env_file = tmp_path / "agebridge.env"
    env_file.write_text(
        "# local settings\n"
        "export AGEBRIDGE_DB=from_file\n"
        "AGEBRIDGE_USER='file_user'\n"
    )
    clean_env.setenv("AGEBRIDGE_ENV_FILE", str(env_file))
    clean_env.setenv("AGEBRIDGE_DB", "from_env")
    # registered so the value written by the loader is removed afterwards
    clean_env.setenv("AGEBRIDGE_USER", "placeholder")
    clean_env.delenv("AGEBRIDGE_USER")

    config_module.load_env_if_present(force_reload=True)
    config = BridgeConfig.from_env(load_dotenv=False)

    assert config.dbname == "from_env"
    assert config.user == "file_user"


def test_conninfo_quotes_special_values():
    config = BridgeConfig(host="db", dbname="graphs", user="app", password="it's secret", sslmode="require")

    conninfo = config.conninfo

    assert "host=db" in conninfo
    assert "dbname=graphs" in conninfo
    assert "password='it\\'s secret'" in conninfo
    assert "sslmode=require" in conninfo
    assert "application_name=agebridge" in conninfo


def test_describe_omits_password():
    config = BridgeConfig(password="hunter2")

    assert "hunter2" not in str(config.describe())
    assert "hunter2" not in repr(config)


def test_blank_strings_rejected():
    with pytest.raises(ValidationError):
        BridgeConfig(host="   ")


def test_pool_settings_bounds():
    with pytest.raises(ValidationError):
        PoolSettings(min_size=5, max_size=2)
    assert PoolSettings(min_size=0, max_size=1).min_size == 0


def test_retry_policy_bounds():
    with pytest.raises(ValidationError):
        RetryPolicy(delay=5.0, max_delay=1.0)
    with pytest.raises(ValidationError):
        RetryPolicy(jitter=1.5)
    with pytest.raises(ValidationError):
        RetryPolicy(unknown=1)
