"""Tests for configuration loading and validation."""

import os

import pytest
from pydantic import ValidationError

from salesflow.config import (
    AppConfig,
    LogLevel,
    get_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from salesflow.startup import create_argument_parser, load_configuration, main


class TestFromEnv:

    def test_defaults(self, monkeypatch):
        for key in ("SALESFLOW_MAX_TRIGGER_HOPS", "SALESFLOW_DATABASE_URL", "SALESFLOW_LOG_LEVEL"):
            monkeypatch.delenv(key, raising=False)

        config = AppConfig.from_env()

        assert config.max_visits_per_node == 3
        assert config.max_trigger_hops == 3
        assert config.node_timeout == 15
        assert config.default_delay_hours == 1.0
        assert config.log_level == LogLevel.INFO

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SALESFLOW_MAX_TRIGGER_HOPS", "5")
        monkeypatch.setenv("SALESFLOW_STRUCTURED_LOGGING", "yes")
        monkeypatch.setenv("SALESFLOW_LOG_LEVEL", "debug")
        monkeypatch.setenv("SALESFLOW_CORS_ORIGINS", "https://a.test,https://b.test")

        config = AppConfig.from_env()

        assert config.max_trigger_hops == 5
        assert config.structured_logging is True
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["https://a.test", "https://b.test"]

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_load_config_reads_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SALESFLOW_SWEEP_BATCH_SIZE", raising=False)
        env_file = tmp_path / "salesflow.env"
        env_file.write_text("SALESFLOW_SWEEP_BATCH_SIZE=25\n")

        try:
            config = load_config(str(env_file))
        finally:
            os.environ.pop("SALESFLOW_SWEEP_BATCH_SIZE", None)

        assert config.sweep_batch_size == 25
        assert get_config() is config


class TestValidation:

    @pytest.mark.parametrize("field,value", [
        ("database_url", "oracle://db"),
        ("port", 0),
        ("max_visits_per_node", 0),
        ("max_trigger_hops", -1),
        ("node_timeout", 0),
        ("default_delay_hours", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_api_key_without_url_fails(self):
        config = AppConfig(evolution_api_key="secret", database_url="sqlite:///:memory:")
        with pytest.raises(ValueError, match="EVOLUTION_API_URL"):
            validate_config(config)

    def test_creates_database_directory(self, tmp_path):
        db_dir = tmp_path / "data"
        validate_config(AppConfig(database_url=f"sqlite:///{db_dir}/salesflow.db"))
        assert db_dir.exists()


class TestPresets:

    def test_testing_preset_uses_memory_database(self):
        config = get_testing_config()
        assert config.database_url == "sqlite:///:memory:"
        assert config.is_sqlite

    def test_production_preset(self):
        config = get_production_config()
        assert config.structured_logging
        assert config.cors_origins == []
        assert config.is_production


class TestCommandLine:

    def test_flags_override_preset(self):
        args = create_argument_parser().parse_args([
            "--env", "testing", "--port", "9000", "--log-level", "ERROR", "--max-concurrent-executions", "4",
        ])
        config = load_configuration(args)

        assert config.database_url == "sqlite:///:memory:"
        assert config.port == 9000
        assert config.log_level == LogLevel.ERROR
        assert config.max_concurrent_executions == 4

    def test_sweep_subcommand_arguments(self):
        args = create_argument_parser().parse_args(["sweep", "--batch-size", "10"])

        assert args.command == "sweep"
        assert args.batch_size == 10

    def test_config_validate_command(self, capsys):
        main(["--env", "testing", "config", "validate"])

        assert "PASSED" in capsys.readouterr().out
