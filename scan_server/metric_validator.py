# Metric Contract Validator - untrusted oracle payload -> guaranteed-valid MetricSet
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from scan_server import config
from scan_server import logger


@dataclass(frozen=True)
class MetricSet:
    """Six scan scores in [0, 100]; potential_ceiling is always 0."""

    water_retention: float
    inflammation_index: float
    lymph_congestion_score: float
    facial_fat_layer: float
    definition_score: float
    potential_ceiling: float = 0.0
    warnings: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in config.ALL_METRICS}

    def scored_values(self) -> List[float]:
        return [getattr(self, name) for name in config.SCORED_METRICS]

    @property
    def spread(self) -> float:
        values = self.scored_values()
        return round(max(values) - min(values), config.METRIC_DECIMALS)


def default_metric_set() -> MetricSet:
    return MetricSet(**config.DEFAULT_METRICS)


def coerce_metric(value: Any) -> Optional[float]:
    """
    Return a finite float for numeric input, None otherwise

    bool is rejected even though it is an int subclass; numeric strings are
    not accepted.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def clamp_metric(value: float) -> float:
    clamped = max(config.METRIC_MIN, min(config.METRIC_MAX, value))
    return round(clamped, config.METRIC_DECIMALS)


def validate_metrics(raw: Any) -> MetricSet:
    """
    Enforce the six-key metric contract

    Never raises. Bad fields fall back to their default, good fields are
    clamped to [0, 100] and rounded; potential_ceiling is forced to 0. A
    spread under METRIC_SPREAD_MIN is flagged but the values are left alone.

    Args:
        raw: Mapping returned by the oracle (anything else counts as empty)

    Returns:
        MetricSet
    """
    payload: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    if not isinstance(raw, Mapping):
        logger.log_warning("Metric Payload Not An Object", {"type": type(raw).__name__, "action": "using default metrics"})

    values: Dict[str, float] = {}
    substituted: List[str] = []

    for name in config.SCORED_METRICS:
        number = coerce_metric(payload.get(name))
        if number is None:
            values[name] = config.DEFAULT_METRICS[name]
            substituted.append(name)
        else:
            values[name] = clamp_metric(number)

    if substituted:
        logger.log_warning("Invalid Metrics Replaced", {
            "metrics": ", ".join(substituted),
            "action": "using defaults"
        })

    warnings: List[str] = []
    spread = max(values.values()) - min(values.values())
    if spread < config.METRIC_SPREAD_MIN:
        message = (
            f"Low metric spread ({round(spread, config.METRIC_DECIMALS)} points, "
            f"expected at least {config.METRIC_SPREAD_MIN})"
        )
        warnings.append(message)
        logger.log_warning("Low Metric Spread", {"spread": round(spread, config.METRIC_DECIMALS), **values})

    metric_set = MetricSet(potential_ceiling=0.0, warnings=tuple(warnings), **values)
    logger.log_validator("Metrics Validated", metric_set.to_dict())
    return metric_set
