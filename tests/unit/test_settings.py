"""Tests for ingest.lib.settings module."""

import pytest

from ingest.lib.errors import ConfigurationError, ErrorKind
from ingest.lib.resilience import DEFAULT_POLICIES
from ingest.lib.settings import load_settings, parse_retry_policies, parse_settings


def _write(tmp_path, text):
    path = tmp_path / "ingest.yaml"
    path.write_text(text)
    return path


class TestLoadSettings:
    def test_yaml_with_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FMP_API_KEY", "secret")
        monkeypatch.setenv("WAREHOUSE", "postgresql://db/warehouse")
        path = _write(
            tmp_path,
            """
api:
  api_key: ${FMP_API_KEY}
  requests_per_minute: 600
sink:
  type: postgres
  dsn: ${WAREHOUSE}
orchestrator:
  mode: full
  batch_size: 5
  run_log: logs/update_log.json
entities: [AAPL, MSFT, AAPL]
""",
        )

        settings = load_settings(path)

        assert settings.api.api_key == "secret"
        assert settings.api.requests_per_minute == 600
        assert settings.sink.type == "postgres"
        assert settings.sink.dsn == "postgresql://db/warehouse"
        assert settings.orchestrator.mode == "full"
        assert settings.orchestrator.lookback_days == 730
        assert settings.orchestrator.batch_size == 5
        assert settings.orchestrator.run_log == tmp_path / "logs" / "update_log.json"
        assert settings.entities == ["AAPL", "MSFT"]

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings()

        assert settings.api.api_key is None
        assert settings.api.requests_per_minute == 2800
        assert settings.sink.type == "memory"
        assert settings.orchestrator.mode == "incremental"
        assert settings.state_dir == tmp_path / "state"
        assert settings.retry == DEFAULT_POLICIES
        assert len(settings.data_kinds) == 5

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("FMP_API_KEY", "from-env")
        assert parse_settings({}).api.api_key == "from-env"

    def test_unexpanded_reference_is_treated_as_unset(self):
        settings = parse_settings({"api": {"api_key": "${FMP_API_KEY}"}})
        assert settings.api.api_key is None

    def test_state_dir_relative_to_config(self, tmp_path):
        settings = parse_settings({"state_dir": "var/state"}, config_dir=tmp_path)
        assert settings.state_dir == tmp_path / "var" / "state"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_settings(_write(tmp_path, "api: [unclosed"))

    def test_root_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(_write(tmp_path, "- a\n- b\n"))

    def test_custom_data_kinds(self, tmp_path):
        path = _write(
            tmp_path,
            """
data_kinds:
  - name: quotes
    endpoint: /quote/{entity}
    table: quotes
    timestamp_field: timestamp
""",
        )
        settings = load_settings(path)
        assert [k.name for k in settings.data_kinds] == ["quotes"]


class TestValidation:
    def test_all_issues_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_settings(
                {
                    "api": {"requests_per_minute": "lots", "timeout": 0},
                    "sink": {"type": "parquet"},
                    "orchestrator": {"mode": "weekly"},
                    "entities": "AAPL",
                }
            )

        issues = exc_info.value.issues
        assert len(issues) == 5
        assert any("api.requests_per_minute" in i for i in issues)
        assert any("api.timeout" in i for i in issues)
        assert any("sink.type" in i for i in issues)
        assert any("orchestrator.mode" in i for i in issues)
        assert any("entities" in i for i in issues)

    def test_postgres_sink_requires_dsn(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_settings({"sink": {"type": "postgres"}})
        assert any("INGEST_SINK_DSN" in i for i in exc_info.value.issues)

    def test_postgres_failed_jobs_requires_dsn(self):
        with pytest.raises(ConfigurationError):
            parse_settings({"failed_jobs": {"backend": "postgres"}})

    def test_dsn_from_environment(self, monkeypatch):
        monkeypatch.setenv("INGEST_SINK_DSN", "postgresql://env/db")
        settings = parse_settings({"sink": {"type": "postgres"}, "failed_jobs": {"backend": "postgres"}})
        assert settings.sink.dsn == "postgresql://env/db"
        assert settings.failed_jobs.backend == "postgres"


class TestRetryPolicies:
    def test_override_merges_with_defaults(self):
        policies = parse_retry_policies({"server_error": {"max_attempts": 4, "initial_delay": 1}})

        server = policies[ErrorKind.SERVER_ERROR]
        assert server.max_attempts == 4
        assert server.initial_delay == 1
        assert server.max_delay == DEFAULT_POLICIES[ErrorKind.SERVER_ERROR].max_delay
        assert policies[ErrorKind.TIMEOUT] == DEFAULT_POLICIES[ErrorKind.TIMEOUT]

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_retry_policies({"gremlins": {"max_attempts": 2}})
        assert "gremlins" in exc_info.value.issues[0]

    def test_bad_values(self):
        with pytest.raises(ConfigurationError):
            parse_retry_policies({"timeout": {"max_attempts": 0, "backoff_multiplier": 0.5}})

    def test_empty_returns_defaults(self):
        assert parse_retry_policies(None) == DEFAULT_POLICIES
