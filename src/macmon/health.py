"""Health classification of metric values into nominal/elevated/critical."""

import logging
from collections.abc import Iterable, Mapping

from macmon.models import ClassifiedMetric, HealthLevel, MetricKind, Rate, Thresholds

logger = logging.getLogger(__name__)


def classify(value: float, thresholds: Thresholds) -> HealthLevel:
    """Map a value to a level. Pure and monotonic in ``value``."""
    if value >= thresholds.critical_at:
        return HealthLevel.CRITICAL
    if value >= thresholds.elevated_at:
        return HealthLevel.ELEVATED
    return HealthLevel.NOMINAL


class HealthClassifier:
    """
    Classifier that remembers the last level per metric for hysteresis.

    Upgrades take effect immediately. A downgrade only happens once the value
    has dropped more than ``margin`` below the boundary it is leaving, so a
    value hovering at a threshold does not flap between levels.
    """

    def __init__(self, thresholds: Mapping[MetricKind, Thresholds], margin: float = 2.0) -> None:
        if margin < 0:
            raise ValueError("margin must be non-negative")
        self._thresholds = dict(thresholds)
        self._margin = margin
        self._last: dict[MetricKind, HealthLevel] = {}

    @property
    def thresholds(self) -> dict[MetricKind, Thresholds]:
        return dict(self._thresholds)

    def classify(self, kind: MetricKind, value: float) -> HealthLevel:
        thresholds = self._thresholds.get(kind)
        if thresholds is None:
            return HealthLevel.NOMINAL

        level = classify(value, thresholds)
        previous = self._last.get(kind)
        if previous is not None and level < previous:
            # Only step down as far as the value clears each boundary by the margin
            level = max(level, min(previous, classify(value + self._margin, thresholds)))
        if previous is not None and level != previous:
            logger.debug("health_change metric=%s from=%s to=%s value=%.1f", kind.value, previous.name, level.name, value)
        self._last[kind] = level
        return level

    def classify_rate(self, rate: Rate) -> ClassifiedMetric:
        level = self.classify(rate.kind, rate.value)
        return ClassifiedMetric(rate=rate, level=level, thresholds=self._thresholds.get(rate.kind))

    def classify_rates(self, rates: Iterable[Rate]) -> list[ClassifiedMetric]:
        return [self.classify_rate(rate) for rate in rates]

    def reset(self) -> None:
        self._last.clear()


def overall(metrics: Iterable[ClassifiedMetric]) -> HealthLevel:
    """Worst level across metrics, NOMINAL when there are none."""
    return max((m.level for m in metrics), default=HealthLevel.NOMINAL)
