"""Tests for the YAML configuration loader (efd_config)."""

import pytest

from efd_config import get_fiscal_code_table, get_pipeline_config
from efd_config.loader import (
    apply_env_overrides,
    compute_checksum,
    load_pipeline_config,
    parse_fiscal_code_table,
    parse_pipeline_config,
)
from efd_config.schema import PipelineConfig, TrailerPolicy
from efd_kernel.exceptions import ConfigurationError


class TestPackagedDefaults:
    def test_defaults_load(self):
        config = load_pipeline_config(env={})
        assert isinstance(config, PipelineConfig)
        assert config.chunk.max_lines == 100000
        assert config.chunk.time_budget_seconds == 40
        assert config.batch.size == 1000
        assert config.progress.checkpoint_interval_lines == 5000
        assert config.progress.parse_ceiling == 90
        assert config.progress.refresh_progress == 95
        assert config.retry.max_dispatch_attempts == 5
        assert config.trailer_policy is TrailerPolicy.WARN
        assert config.database_url is None

    def test_view_list(self):
        config = load_pipeline_config(env={})
        assert len(config.view_refresh.views) == 11
        assert "mv_dashboard_stats" in config.view_refresh.views

    def test_config_is_frozen(self):
        config = load_pipeline_config(env={})
        with pytest.raises(AttributeError):
            config.batch = None

    def test_trace_logged(self, captured_logs):
        get_pipeline_config()
        traces = [r for r in captured_logs() if r["message"] == "efd_config_trace"]
        assert traces and len(traces[0]["checksum"]) == 64

    def test_fiscal_code_table(self):
        table = get_fiscal_code_table()
        assert table.record_types == ("C170",)
        categories = {rule.category: rule.codes for rule in table.rules}
        assert "1556" in categories["usage_consumption"]
        assert "1551" in categories["fixed_asset"]


class TestEnvironmentOverrides:
    def test_database_url_override(self):
        config = load_pipeline_config(env={"EFD_DATABASE_URL": "sqlite:///x.db"})
        assert config.database_url == "sqlite:///x.db"

    def test_trailer_policy_override(self):
        config = load_pipeline_config(env={"EFD_TRAILER_POLICY": "FAIL"})
        assert config.trailer_policy is TrailerPolicy.FAIL

    def test_empty_values_ignored(self):
        data = apply_env_overrides({"trailer_policy": "warn"}, {"EFD_TRAILER_POLICY": ""})
        assert data["trailer_policy"] == "warn"

    def test_overrides_do_not_mutate_input(self):
        data = {"database_url": None}
        apply_env_overrides(data, {"EFD_DATABASE_URL": "postgresql://x"})
        assert data["database_url"] is None


class TestValidation:
    def test_missing_sections_use_defaults(self):
        assert parse_pipeline_config({}) == PipelineConfig()

    @pytest.mark.parametrize(
        "data",
        [
            {"chunk": {"max_lines": 0}},
            {"chunk": {"max_lines": "many"}},
            {"chunk": {"max_seconds": 5, "deadline_margin_seconds": 5}},
            {"batch": {"size": -1}},
            {"progress": {"parse_ceiling": 96, "refresh_progress": 95}},
            {"retry": {"backoff_base_seconds": 10, "backoff_max_seconds": 1}},
            {"trailer_policy": "ignore"},
            {"view_refresh": {"views": ["mv_ok", "drop table x"]}},
            {"chunk": ["not", "a", "mapping"]},
        ],
    )
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ConfigurationError):
            parse_pipeline_config(data)

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_pipeline_config({"batch": {"size": True}})
        assert exc_info.value.key == "batch.size"


class TestFiscalCodeTableParsing:
    def test_ranges_parsed(self):
        table = parse_fiscal_code_table(
            {
                "record_types": ["C170"],
                "rules": [{"category": "fixed_asset", "ranges": [["1550", "1559"]]}],
            }
        )
        assert table.rules[0].ranges == (("1550", "1559"),)

    @pytest.mark.parametrize(
        "data",
        [
            {"rules": []},
            {"record_types": ["C170"], "rules": [{"codes": ["1556"]}]},
            {"record_types": ["C170"], "rules": [{"category": "fixed_asset", "codes": ["155"]}]},
            {"record_types": ["C170"], "rules": [{"category": "fixed_asset", "ranges": [["1559", "1550"]]}]},
        ],
    )
    def test_invalid_tables_rejected(self, data):
        with pytest.raises(ConfigurationError):
            parse_fiscal_code_table(data)


class TestChecksum:
    def test_checksum_is_order_independent(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_checksum_changes_with_content(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
