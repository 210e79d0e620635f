import pytest
import yaml
from pydantic import ValidationError

from streamkoppler.config import ConfigurationError, RelayConfig, load_config

_ENV_NAMES = [
    "STREAMKOPPLER_CONFIG",
    "STREAMKOPPLER_UPSTREAM_API_KEY",
    "STREAMKOPPLER_UPSTREAM_BASE_URL",
    "STREAMKOPPLER_MAX_CONTEXT_MESSAGES",
    "STREAMKOPPLER_PROGRESSIVE_ENABLED",
    "STREAMKOPPLER_RETRIEVAL_ENABLED",
    "STREAMKOPPLER_RETRIEVAL_EMBEDDING",
    "STREAMKOPPLER_LOG_JSON",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data: dict[str, object]) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


def test_defaults_match_documented_limits(tmp_path) -> None:
    cfg = load_config(_write(tmp_path, {"upstream_api_key": "k"}))

    assert cfg.sessions.max_messages == 10
    assert cfg.sessions.expiry_seconds == 36000
    assert cfg.sessions.sweep_interval_seconds == 1800
    assert cfg.progressive.enabled is False
    assert cfg.progressive.max_tokens == 100
    assert cfg.progressive.temperature == 0.4
    assert cfg.retrieval.similarity_threshold == 0.7
    assert cfg.retrieval.max_documents == 3
    assert cfg.tools.enabled is True
    assert cfg.stream_keepalive_seconds == 15.0
    assert cfg.logging.level == "INFO"


def test_missing_credential_is_a_configuration_error(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="upstream_api_key"):
        load_config(_write(tmp_path, {}))


def test_credential_check_can_be_skipped(tmp_path) -> None:
    cfg = load_config(_write(tmp_path, {}), require_credentials=False)

    assert cfg.upstream_api_key is None


def test_environment_overrides_nested_sections(tmp_path, monkeypatch) -> None:
    path = _write(
        tmp_path,
        {"upstream_api_key": "from-file", "sessions": {"expiry_seconds": 60}, "logging": {"level": "DEBUG"}},
    )
    monkeypatch.setenv("STREAMKOPPLER_UPSTREAM_API_KEY", "from-env")
    monkeypatch.setenv("STREAMKOPPLER_MAX_CONTEXT_MESSAGES", "4")
    monkeypatch.setenv("STREAMKOPPLER_PROGRESSIVE_ENABLED", "true")
    monkeypatch.setenv("STREAMKOPPLER_RETRIEVAL_ENABLED", "1")
    monkeypatch.setenv("STREAMKOPPLER_RETRIEVAL_EMBEDDING", "UPSTREAM")
    monkeypatch.setenv("STREAMKOPPLER_LOG_JSON", "yes")

    cfg = load_config(path)

    assert cfg.upstream_api_key == "from-env"
    assert cfg.sessions.max_messages == 4
    assert cfg.sessions.expiry_seconds == 60
    assert cfg.progressive.enabled is True
    assert cfg.retrieval.enabled is True
    assert cfg.retrieval.embedding == "upstream"
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True


def test_config_path_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("STREAMKOPPLER_CONFIG", _write(tmp_path, {"upstream_api_key": "k", "upstream_default_model": "m"}))

    assert load_config().upstream_default_model == "m"


def test_unknown_top_level_key_is_rejected() -> None:
    with pytest.raises(ValidationError):
        RelayConfig.model_validate({"upstream_api_key": "k", "mcp_servers": []})


def test_service_base_url_requires_port() -> None:
    with pytest.raises(ValidationError, match="host and port"):
        RelayConfig.model_validate({"service_base_url": "http://localhost"})


def test_invalid_session_bound_is_rejected() -> None:
    with pytest.raises(ValidationError, match="max_messages"):
        RelayConfig.model_validate({"sessions": {"max_messages": 0}})


def test_null_sections_fall_back_to_defaults() -> None:
    cfg = RelayConfig.model_validate({"sessions": None, "retrieval": {"documents": None}})

    assert cfg.sessions.max_messages == 10
    assert cfg.retrieval.documents == []


def test_non_mapping_yaml_root_is_rejected(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Config root"):
        load_config(str(path))
