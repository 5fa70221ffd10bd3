"""
Tests for engine settings (environment and .env) and pipeline configuration
loading from mappings and YAML.
"""

import pytest
from pydantic import ValidationError

from importer.common.config_models import ImportPipelineConfig, load_pipeline_yaml, load_pipeline_yaml_string, resolve_env
from importer.common.exceptions import ConfigurationError
from importer.common.settings import ImportSettings, load_settings


# ============================================================================
# Settings
# ============================================================================


class TestLoadSettings:
    """Test load_settings()."""

    def test_defaults(self):
        """Test an empty environment yields the documented defaults."""
        settings = load_settings(env={})

        assert settings.queues.default == "import-pipelines"
        assert settings.queues.high_priority == "import-pipelines-high"
        assert (settings.timeouts.default, settings.timeouts.large_files, settings.timeouts.small_files) == (
            5600, 7200, 1800,
        )
        assert (settings.retry.max_attempts, settings.retry.backoff, settings.retry.max_exceptions) == (1, 60, 3)
        assert (settings.memory.default, settings.memory.large_files) == (512, 1024)
        assert settings.scheduling.tolerance_minutes == 5
        assert settings.scheduling.custom_interval_hours == 24
        assert settings.prepare.using is None

    def test_environment_overrides(self):
        """Test variables are coerced into their sections."""
        settings = load_settings(env={
            "IMPORT_PIPELINES_TIMEOUT": "900",
            "IMPORT_PIPELINES_HIGH_PRIORITY_QUEUE": "urgent",
            "IMPORT_PIPELINES_TOLERANCE_MINUTES": "2",
            "IMPORT_PIPELINES_PREPARE_RESOLVER": "title",
            "IMPORT_PIPELINES_SCHEDULING_LOG_LEVEL": "debug",
            "IMPORT_PIPELINES_LOG_CHANNELS": "download=dev, scheduling=user",
        })

        assert settings.timeouts.default == 900
        assert settings.queues.high_priority == "urgent"
        assert settings.scheduling.tolerance_minutes == 2
        assert settings.prepare.using == "title"
        assert settings.logging.channels == {"download": "dev", "scheduling": "debug"}

    def test_empty_values_keep_defaults(self):
        """Test blank variables are ignored."""
        assert load_settings(env={"IMPORT_PIPELINES_CACHE_URL": ""}).cache.url is None

    @pytest.mark.parametrize("var,value", [
        ("IMPORT_PIPELINES_TIMEOUT", "soon"),
        ("IMPORT_PIPELINES_TIMEOUT", "0"),
        ("IMPORT_PIPELINES_RETRY_ATTEMPTS", "0"),
        ("IMPORT_PIPELINES_LOG_CHANNELS", "billing=debug"),
        ("IMPORT_PIPELINES_EXECUTION_LOG_LEVEL", "loud"),
    ])
    def test_invalid_values(self, var, value):
        """Test invalid values raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid engine settings"):
            load_settings(env={var: value})

    def test_dotenv_fills_gaps(self, tmp_path):
        """Test .env values apply unless the environment sets them."""
        dotenv = tmp_path / ".env"
        dotenv.write_text("IMPORT_PIPELINES_MEMORY=2048\nIMPORT_PIPELINES_QUEUE=from-file\n", encoding="utf-8")

        settings = load_settings(env={"IMPORT_PIPELINES_QUEUE": "from-env"}, dotenv_path=dotenv)

        assert settings.memory.default == 2048
        assert settings.queues.default == "from-env"

    def test_settings_are_immutable(self):
        """Test settings cannot be changed after construction."""
        settings = ImportSettings()
        with pytest.raises(ValidationError):
            settings.queues.default = "other"


# ============================================================================
# Pipeline configuration
# ============================================================================


class TestPipelineConfig:
    """Test ImportPipelineConfig construction."""

    def test_from_mapping_accepts_stored_keys(self):
        """Test `field`, `transformer`, `required` and value-table lists are normalized."""
        cfg = ImportPipelineConfig.from_mapping({
            "download": {"url": "https://feeds.example.com/a.json", "method": "post"},
            "read": {"type": "JSON"},
            "filter": {"rules": [{"field": "status", "operator": "equals", "value": "active"}]},
            "map": {"rules": [{"source_field": "c", "target_field": "c", "transformer": "lower",
                               "required": True, "value_mapping": [{"from": "n", "to": "new"}]}]},
        }, pipeline_id=4, organization_id=None)

        assert cfg.download.method.value == "POST"
        assert cfg.download.scheme == "https"
        assert cfg.read.type == "json"
        assert cfg.filter_rules[0].key == "status"
        rule = cfg.map.rules[0]
        assert (rule.transformation, rule.is_required, rule.value_mapping) == ("lower", True, {"n": "new"})
        assert cfg.pipeline_id == 4
        assert cfg.organization_id is None

    @pytest.mark.parametrize("data,message", [
        ({"read": {"type": "csv"}}, "Download URL is required"),
        ({"download": {"url": ""}, "read": {"type": "csv"}}, "Download URL is required"),
        ({"download": {"url": "https://x"}}, "Reader type is required"),
    ])
    def test_required_sections(self, data, message):
        """Test missing source or reader."""
        with pytest.raises(ConfigurationError, match=message):
            ImportPipelineConfig.from_mapping(data)

    def test_all_problems_in_one_error(self):
        """Test every missing section is named in the raised error."""
        with pytest.raises(ConfigurationError) as exc:
            ImportPipelineConfig.from_mapping({"download": {"url": ""}})
        assert exc.value.message == "Download URL is required; Reader type is required"
        assert exc.value.context["problems"] == ["Download URL is required", "Reader type is required"]

    def test_invalid_section_wrapped(self):
        """Test pydantic errors surface as ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid pipeline configuration"):
            ImportPipelineConfig.from_mapping({
                "download": {"url": "https://x"}, "read": {"type": "csv"},
                "images_prepare": {"download_mode": "sometimes"},
            })


class TestYamlLoading:
    """Test YAML documents with a `pipeline:` section."""

    def test_env_placeholders_expanded_in_download(self, monkeypatch):
        """Test credentials are read from the environment."""
        monkeypatch.setenv("FEED_TOKEN", "s3cret")
        cfg = load_pipeline_yaml_string(
            "pipeline:\n"
            "  download:\n"
            "    url: https://feeds.example.com/a.csv\n"
            "    headers:\n"
            "      Authorization: Bearer ${FEED_TOKEN}\n"
            "  read:\n"
            "    type: csv\n"
        )
        assert cfg.download.headers == {"Authorization": "Bearer s3cret"}

    def test_missing_pipeline_section(self):
        """Test documents without a pipeline section."""
        with pytest.raises(ConfigurationError, match="Missing 'pipeline' section"):
            load_pipeline_yaml_string("download: {}\n")

    def test_invalid_yaml(self):
        """Test YAML syntax errors."""
        with pytest.raises(ConfigurationError, match="Invalid YAML configuration"):
            load_pipeline_yaml_string("pipeline: [unclosed\n")

    def test_missing_file(self, tmp_path):
        """Test a missing path."""
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            load_pipeline_yaml(tmp_path / "nope.yaml")

    def test_resolve_env_recurses(self, monkeypatch):
        """Test nested strings are expanded and unknown names kept."""
        monkeypatch.setenv("HOST", "ftp.example.com")
        assert resolve_env({"a": ["$HOST", {"b": "{UNSET_NAME_X}"}], "n": 1}) == {
            "a": ["ftp.example.com", {"b": "{UNSET_NAME_X}"}], "n": 1,
        }
