import os

import pytest

from env_validation import DEFAULTS, ConfigurationError, get_env_bool, get_env_int, validate_environment


@pytest.fixture
def clean_env(monkeypatch):
    # Empty values count as unset; monkeypatch restores the originals
    for var in DEFAULTS:
        monkeypatch.setenv(var, "")
    return monkeypatch


def test_defaults_are_applied(clean_env, caplog):
    caplog.set_level("INFO")
    validate_environment()
    assert os.environ["DB_PATH"] == "data.db"
    assert get_env_int("PROGRESS_WRITE_RETRIES") == 3
    assert get_env_int("RANKING_MAX_WORKERS") == 1
    assert get_env_int("CANDIDATE_CACHE_TTL_SECONDS") == 300
    assert get_env_bool("ESCALATION_EVENTS_ENABLED") is True
    assert "PROGRESS_WRITE_RETRIES not set" in caplog.text


def test_explicit_values_are_kept(clean_env):
    clean_env.setenv("RANKING_MAX_WORKERS", "4")
    clean_env.setenv("ESCALATION_EVENTS_ENABLED", "off")
    validate_environment()
    assert get_env_int("RANKING_MAX_WORKERS") == 4
    assert get_env_bool("ESCALATION_EVENTS_ENABLED", True) is False


@pytest.mark.parametrize(
    "var, value",
    [
        ("PROGRESS_WRITE_RETRIES", "three"),
        ("RANKING_MAX_WORKERS", "0"),
        ("CANDIDATE_CACHE_TTL_SECONDS", "-5"),
        ("ESCALATION_EVENTS_ENABLED", "maybe"),
    ],
)
def test_invalid_values_raise(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(ConfigurationError):
        validate_environment()


def test_get_env_int_fallbacks(monkeypatch):
    monkeypatch.delenv("SOME_UNKNOWN_SETTING", raising=False)
    assert get_env_int("SOME_UNKNOWN_SETTING", 7) == 7
    with pytest.raises(ConfigurationError):
        get_env_int("SOME_UNKNOWN_SETTING")


def test_get_env_bool(monkeypatch):
    monkeypatch.delenv("FEATURE_FLAG", raising=False)
    assert get_env_bool("FEATURE_FLAG", True) is True
    monkeypatch.setenv("FEATURE_FLAG", " Yes ")
    assert get_env_bool("FEATURE_FLAG") is True
    monkeypatch.setenv("FEATURE_FLAG", "no")
    assert get_env_bool("FEATURE_FLAG", True) is False
