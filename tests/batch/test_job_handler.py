"""Tests for the job handler capability and result coercion."""

import pytest

from dockwatch.batch.handler import BatchJobConfig, JobResult


class TestJobResult:
    """Tests for JobResult.from_value."""

    def test_passthrough(self):
        result = JobResult(items_checked=2)
        assert JobResult.from_value(result) is result

    def test_none(self):
        assert JobResult.from_value(None) == JobResult()

    def test_mapping(self):
        result = JobResult.from_value(
            {"items_checked": "5", "items_updated": 1, "partial": True, "message": "2 skipped"}
        )

        assert result == JobResult(items_checked=5, items_updated=1, partial=True, message="2 skipped")

    def test_unsupported(self):
        with pytest.raises(TypeError):
            JobResult.from_value(42)


class TestJobHandler:
    """Tests for JobHandler accessors and config validation."""

    def test_accessors(self, make_handler):
        handler = make_handler("registry-scan", enabled=True, interval_minutes=15)

        assert handler.get_job_type() == "registry-scan"
        assert handler.get_display_name() == "Registry Scan"
        assert handler.get_default_config() == BatchJobConfig(enabled=True, interval_minutes=15)

    def test_default_config_is_a_copy(self, make_handler):
        handler = make_handler()

        config = handler.get_default_config()
        config.enabled = False

        assert handler.get_default_config().enabled is True

    @pytest.mark.parametrize(
        "config",
        [
            {"enabled": True, "interval_minutes": 1},
            {"enabled": False, "interval_minutes": 1440},
            BatchJobConfig(enabled=True, interval_minutes=60),
        ],
    )
    def test_valid_config(self, make_handler, config):
        assert make_handler().validate_config(config) == (True, None)

    @pytest.mark.parametrize(
        "config, error",
        [
            ({"enabled": "yes", "interval_minutes": 60}, "enabled must be a boolean"),
            ({"enabled": True, "interval_minutes": 0}, "interval_minutes"),
            ({"enabled": True, "interval_minutes": 1441}, "interval_minutes"),
            ({"enabled": True, "interval_minutes": True}, "interval_minutes"),
            ({"enabled": True}, "interval_minutes"),
            ("enabled", "Config must be an object"),
        ],
    )
    def test_invalid_config(self, make_handler, config, error):
        valid, message = make_handler().validate_config(config)

        assert valid is False
        assert error in message
