"""
macmon configuration: loads and validates macmon.yaml
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from macmon.models import MetricKind, Thresholds

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 10.0


@dataclass
class ThresholdConfig:
    elevated_at: float
    critical_at: float


def _default_thresholds() -> dict[str, ThresholdConfig]:
    return {
        "cpu": ThresholdConfig(70.0, 85.0),
        "memory": ThresholdConfig(70.0, 85.0),
        "disk": ThresholdConfig(70.0, 85.0),
        "swap": ThresholdConfig(50.0, 80.0),
        "temperature": ThresholdConfig(70.0, 85.0),
    }


@dataclass
class SamplingConfig:
    interval_seconds: float = 2.0
    min_interval_seconds: float = 0.1  # shorter ticks hold the previous rates
    smoothing_window: int = 3
    history_capacity: int = 60
    disk_volume: str = "/"
    include_processes: bool = True


@dataclass
class HealthConfig:
    hysteresis_margin: float = 2.0
    thresholds: dict[str, ThresholdConfig] = field(default_factory=_default_thresholds)

    def as_thresholds(self) -> dict[MetricKind, Thresholds]:
        """Convert the configured pairs into model Thresholds keyed by metric."""
        return {
            MetricKind(name): Thresholds(pair.elevated_at, pair.critical_at)
            for name, pair in self.thresholds.items()
        }


@dataclass
class CleanupConfig:
    home: str = "~"
    max_depth: int = 16
    min_size_bytes: int = 0
    log_min_age_days: int = 7


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class MonitorConfig:
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def home(self) -> Path:
        return Path(self.cleanup.home).expanduser()

    @classmethod
    def load(cls, config_path: str | None = None) -> "MonitorConfig":
        """Load config from a YAML file, falling back to defaults."""
        if config_path is None:
            # Search order: ./macmon.yaml, ~/.config/macmon/macmon.yaml
            candidates = [
                Path("macmon.yaml"),
                Path("~/.config/macmon/macmon.yaml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = str(candidate)
                    break

        if config_path and Path(config_path).exists():
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
            logger.debug("config_loaded path=%s", config_path)
            return cls._from_dict(raw)

        config = cls()
        config._validate()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "MonitorConfig":
        """Build config from a dict, keeping defaults for missing keys."""
        config = cls()

        if "sampling" in data:
            s = data["sampling"] or {}
            config.sampling = SamplingConfig(**{
                k: s.get(k, getattr(config.sampling, k))
                for k in SamplingConfig.__dataclass_fields__
            })

        if "health" in data:
            h = data["health"] or {}
            thresholds = _default_thresholds()
            for name, pair in (h.get("thresholds") or {}).items():
                thresholds[name] = ThresholdConfig(
                    elevated_at=float(pair["elevated_at"]),
                    critical_at=float(pair["critical_at"]),
                )
            config.health = HealthConfig(
                hysteresis_margin=h.get("hysteresis_margin", config.health.hysteresis_margin),
                thresholds=thresholds,
            )

        if "cleanup" in data:
            c = data["cleanup"] or {}
            config.cleanup = CleanupConfig(**{
                k: c.get(k, getattr(config.cleanup, k))
                for k in CleanupConfig.__dataclass_fields__
            })

        if "logging" in data:
            lg = data["logging"] or {}
            config.logging = LoggingConfig(level=str(lg.get("level", config.logging.level)).upper())

        config._validate()
        return config

    def _validate(self) -> None:
        """Validate config values."""
        errors = []
        known_metrics = {kind.value for kind in MetricKind}

        interval = self.sampling.interval_seconds
        if not (MIN_INTERVAL_SECONDS <= interval <= MAX_INTERVAL_SECONDS):
            errors.append(
                f"sampling.interval_seconds must be {MIN_INTERVAL_SECONDS:g}-{MAX_INTERVAL_SECONDS:g}, got {interval}"
            )
        if self.sampling.min_interval_seconds <= 0:
            errors.append("sampling.min_interval_seconds must be positive")
        if self.sampling.smoothing_window < 1:
            errors.append("sampling.smoothing_window must be >= 1")
        if self.sampling.history_capacity < 1:
            errors.append("sampling.history_capacity must be >= 1")
        if self.health.hysteresis_margin < 0:
            errors.append("health.hysteresis_margin must be non-negative")
        for name, pair in self.health.thresholds.items():
            if name not in known_metrics:
                errors.append(f"health.thresholds has unknown metric '{name}'")
            elif pair.elevated_at > pair.critical_at:
                errors.append(f"health.thresholds.{name}: elevated_at must not exceed critical_at")
        if self.cleanup.max_depth < 1:
            errors.append("cleanup.max_depth must be >= 1")
        if self.cleanup.min_size_bytes < 0:
            errors.append("cleanup.min_size_bytes must be non-negative")
        if self.cleanup.log_min_age_days < 0:
            errors.append("cleanup.log_min_age_days must be non-negative")
        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"logging.level must be a logging level name, got '{self.logging.level}'")

        if errors:
            raise ValueError("Config validation errors:\n" + "\n".join(f"  - {e}" for e in errors))
