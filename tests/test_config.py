import json

import pytest
from jsonschema import ValidationError

from smartmail.utils.config import (
    get_default_config,
    load_config,
    reset_config_cache,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    monkeypatch.delenv("SMARTMAIL_CONFIG", raising=False)
    monkeypatch.delenv("USE_GEMINI", raising=False)
    reset_config_cache()
    yield
    reset_config_cache()


def write_config(tmp_path, data, name="config.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
    return str(path)


def test_explicit_path_merged_with_defaults(tmp_path):
    path = write_config(tmp_path, {"provider": "ollama", "batch": {"chunk_size": 2}})

    cfg = load_config(path)

    assert cfg["provider"] == "ollama"
    assert cfg["batch"]["chunk_size"] == 2
    # Untouched keys come from the defaults
    assert cfg["batch"]["page_size"] == 50
    assert cfg["rate_limit"] == {"max_calls": 10, "window_seconds": 60}


def test_env_path(tmp_path, monkeypatch):
    monkeypatch.setenv("SMARTMAIL_CONFIG", write_config(tmp_path, {"provider": "ollama", "log_level": "DEBUG"}))

    assert load_config()["log_level"] == "DEBUG"


def test_invalid_candidate_is_skipped(tmp_path, monkeypatch):
    bad = write_config(tmp_path, "{not json", name="bad.json")
    good = write_config(tmp_path, {"provider": "ollama", "log_level": "WARNING"}, name="good.json")
    monkeypatch.setenv("SMARTMAIL_CONFIG", good)

    assert load_config(bad)["log_level"] == "WARNING"


def test_schema_violation_is_skipped(tmp_path, monkeypatch):
    bad = write_config(tmp_path, {"provider": "openai"}, name="bad.json")
    good = write_config(tmp_path, {"provider": "gemini", "log_level": "ERROR"}, name="good.json")
    monkeypatch.setenv("SMARTMAIL_CONFIG", good)

    assert load_config(bad)["log_level"] == "ERROR"


def test_result_is_cached(tmp_path):
    first = load_config(write_config(tmp_path, {"provider": "ollama"}))

    assert load_config() is first


@pytest.mark.parametrize("value,expected", [("true", True), ("TRUE", True), ("false", False)])
def test_use_gemini_env_override(tmp_path, monkeypatch, value, expected):
    monkeypatch.setenv("USE_GEMINI", value)
    path = write_config(tmp_path, {"provider": "gemini", "ai_enabled": not expected})

    assert load_config(path)["ai_enabled"] is expected


def test_validate_good_config():
    validate_config({
        "provider": "gemini",
        "ai_enabled": True,
        "rate_limit": {"max_calls": 5, "window_seconds": 30},
        "batch": {"chunk_size": 5, "chunk_delay": 0, "max_batch_sizes": {"fetchEmails": 100}},
        "storage": {"backend": "sqlite", "path": "/tmp/x.db"},
    })


@pytest.mark.parametrize("cfg", [
    {},
    {"provider": "openai"},
    {"provider": "gemini", "rate_limit": {"max_calls": 0}},
    {"provider": "gemini", "batch": {"chunk_size": 5, "unknown": 1}},
    {"provider": "gemini", "storage": {"backend": "mongo"}},
])
def test_validate_bad_config(cfg):
    with pytest.raises(ValidationError):
        validate_config(cfg)


def test_validate_rejects_non_dict():
    with pytest.raises(ValueError):
        validate_config(["provider"])


def test_defaults_are_valid_and_copied():
    defaults = get_default_config()
    validate_config(defaults)

    defaults["batch"]["chunk_size"] = 99

    assert get_default_config()["batch"]["chunk_size"] == 5


def test_example_config_is_valid():
    import os
    import smartmail

    path = os.path.join(os.path.dirname(smartmail.__file__), "config.json.example")
    with open(path, encoding="utf-8") as f:
        validate_config(json.load(f))
