"""Tests for configuration loading."""

import pytest
import yaml

from macmon.config import MonitorConfig
from macmon.models import MetricKind, Thresholds


def _write(tmp_path, data):
    path = tmp_path / "macmon.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestMonitorConfig:
    def test_defaults(self):
        config = MonitorConfig()
        config._validate()
        assert config.sampling.interval_seconds == 2.0
        assert config.cleanup.log_min_age_days == 7
        assert config.health.as_thresholds()[MetricKind.CPU] == Thresholds(70.0, 85.0)

    def test_missing_file_gives_defaults(self, tmp_path):
        config = MonitorConfig.load(str(tmp_path / "absent.yaml"))
        assert config.sampling.interval_seconds == 2.0

    def test_partial_file_keeps_defaults(self, tmp_path):
        path = _write(tmp_path, {
            "sampling": {"interval_seconds": 5},
            "health": {"thresholds": {"cpu": {"elevated_at": 60, "critical_at": 90}}},
            "cleanup": {"min_size_bytes": 4096},
            "logging": {"level": "debug"},
        })
        config = MonitorConfig.load(path)
        assert config.sampling.interval_seconds == 5
        assert config.sampling.smoothing_window == 3
        thresholds = config.health.as_thresholds()
        assert thresholds[MetricKind.CPU] == Thresholds(60.0, 90.0)
        assert thresholds[MetricKind.MEMORY] == Thresholds(70.0, 85.0)
        assert config.cleanup.min_size_bytes == 4096
        assert config.cleanup.max_depth == 16
        assert config.logging.level == "DEBUG"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "macmon.yaml"
        path.write_text("")
        assert MonitorConfig.load(str(path)).sampling.interval_seconds == 2.0

    def test_home_is_expanded(self, tmp_path):
        config = MonitorConfig.load(_write(tmp_path, {"cleanup": {"home": str(tmp_path)}}))
        assert config.home == tmp_path

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"sampling": {"interval_seconds": 0.5}}, "interval_seconds"),
            ({"sampling": {"interval_seconds": 30}}, "interval_seconds"),
            ({"sampling": {"smoothing_window": 0}}, "smoothing_window"),
            ({"health": {"hysteresis_margin": -1}}, "hysteresis_margin"),
            ({"health": {"thresholds": {"gpu": {"elevated_at": 1, "critical_at": 2}}}}, "unknown metric"),
            ({"health": {"thresholds": {"cpu": {"elevated_at": 90, "critical_at": 80}}}}, "must not exceed"),
            ({"cleanup": {"max_depth": 0}}, "max_depth"),
            ({"logging": {"level": "loud"}}, "logging.level"),
        ],
    )
    def test_validation(self, tmp_path, data, message):
        with pytest.raises(ValueError, match=message):
            MonitorConfig.load(_write(tmp_path, data))

    def test_all_errors_reported_together(self, tmp_path):
        path = _write(tmp_path, {"sampling": {"interval_seconds": 0, "history_capacity": 0}})
        with pytest.raises(ValueError) as excinfo:
            MonitorConfig.load(path)
        assert "interval_seconds" in str(excinfo.value)
        assert "history_capacity" in str(excinfo.value)
