import json
import logging

import pytest

from depguardian.config import (
    ConfigurationError,
    DepGuardianConfig,
    load_config,
    substitute_env,
)
from depguardian.models.schemas import Severity


def write_config(tmp_path, data):
    path = tmp_path / ".depguardian.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


def test_defaults_when_no_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config(environ={})

    assert config.scanning.severity == Severity.LOW
    assert config.scanning.batch_size == 20
    assert config.snyk_active is False


def test_explicit_missing_file_is_an_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json", environ={})


def test_invalid_json_is_an_error(tmp_path):
    path = write_config(tmp_path, "{not json")
    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        load_config(path, environ={})


def test_env_placeholders_are_substituted(tmp_path):
    path = write_config(
        tmp_path,
        {"snyk": {"enabled": True, "token": "${SNYK_API_TOKEN}", "organization": "acme"}},
    )
    config = load_config(path, environ={"SNYK_API_TOKEN": "abc123"})

    assert config.snyk.token == "abc123"
    assert config.snyk_active


def test_unknown_placeholder_is_kept_and_logged(caplog):
    with caplog.at_level(logging.WARNING):
        assert substitute_env({"a": ["${NOPE}"]}, environ={}) == {"a": ["${NOPE}"]}
    assert "NOPE" in caplog.text


def test_snyk_enabled_without_token_fails_validation(tmp_path):
    path = write_config(tmp_path, {"snyk": {"enabled": True}})
    with pytest.raises(ConfigurationError, match="Snyk token is required"):
        load_config(path, environ={})


def test_snyk_token_from_environment(tmp_path):
    path = write_config(tmp_path, {"snyk": {"enabled": True}})
    config = load_config(path, environ={"SNYK_TOKEN": "from-env"})
    assert config.snyk.token == "from-env"


def test_batch_size_must_be_positive():
    config = DepGuardianConfig.model_validate({"scanning": {"batch_size": 0}})
    with pytest.raises(ConfigurationError, match="batch_size"):
        config.validate_settings()


def test_wrong_shape_is_an_error(tmp_path):
    path = write_config(tmp_path, {"scanning": {"severity": "catastrophic"}})
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        load_config(path, environ={})
