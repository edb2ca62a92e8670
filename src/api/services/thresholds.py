"""Health parameter thresholds and their evaluation.

The registry is static: it is built once at import and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Literal, Mapping, Optional, Union

MetricValue = Union[bool, int, float]
Condition = Literal["below", "above", "outside", "detected"]


class UnknownParameterError(KeyError):
    """Raised when a metric has no entry in the threshold registry."""

    def __init__(self, parameter: str):
        super().__init__(parameter)
        self.parameter = parameter

    def __str__(self) -> str:
        return f"unknown health parameter: {self.parameter!r}"


@dataclass(frozen=True)
class NormalRange:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class ThresholdConfig:
    """Normal range and alerting behavior of one monitored parameter."""

    key: str
    parameter: str
    normal_range: NormalRange
    condition: Condition
    flag_instances: int
    send_notification: bool
    critical_alert: bool
    message: Callable[[MetricValue, str], str]
    unit: str = ""

    def __post_init__(self) -> None:
        if self.flag_instances < 1:
            raise ValueError(f"{self.key}: flag_instances must be >= 1")

    def render_message(self, value: MetricValue, driver_name: str) -> str:
        return self.message(format_value(value), driver_name)


@dataclass(frozen=True)
class ThresholdResult:
    is_alert: bool
    is_critical: bool


def format_value(value: MetricValue):
    """Render whole floats without the trailing '.0' (88.0 -> 88)."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _is_number(value: object) -> bool:
    # bool is an int subclass; it never counts as a numeric reading.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# PUBLIC_INTERFACE
def evaluate(config: ThresholdConfig, value: object) -> ThresholdResult:
    """Map a reading to alert/critical flags. Pure; a value of the wrong type never alerts."""
    lo, hi = config.normal_range.min, config.normal_range.max
    is_alert = False

    if config.condition == "below":
        is_alert = _is_number(value) and lo is not None and value < lo
    elif config.condition == "above":
        is_alert = _is_number(value) and hi is not None and value > hi
    elif config.condition == "outside":
        is_alert = _is_number(value) and (
            (lo is not None and value < lo) or (hi is not None and value > hi)
        )
    elif config.condition == "detected":
        is_alert = value is True

    return ThresholdResult(is_alert=bool(is_alert), is_critical=bool(is_alert and config.critical_alert))


def _build(*configs: ThresholdConfig) -> Mapping[str, ThresholdConfig]:
    return MappingProxyType({c.key: c for c in configs})


HEALTH_THRESHOLDS: Mapping[str, ThresholdConfig] = _build(
    ThresholdConfig(
        key="heartRate",
        parameter="Heart Rate",
        normal_range=NormalRange(min=60, max=100),
        condition="outside",
        flag_instances=1,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name}'s heart rate ({v} bpm) is outside normal range",
        unit="bpm",
    ),
    ThresholdConfig(
        key="breathingRate",
        parameter="Breathing Rate",
        normal_range=NormalRange(min=12, max=20),
        condition="outside",
        flag_instances=1,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name}'s breathing rate ({v} bpm) is outside normal range",
        unit="bpm",
    ),
    ThresholdConfig(
        key="hrvSDNN",
        parameter="HRV SDNN",
        normal_range=NormalRange(min=20),
        condition="below",
        flag_instances=1,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name} is experiencing high stress (HRV SDNN: {v} ms)",
        unit="ms",
    ),
    ThresholdConfig(
        key="oxygenSaturation",
        parameter="Oxygen Saturation",
        normal_range=NormalRange(min=90),
        condition="below",
        flag_instances=1,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name}'s oxygen saturation ({v}%) is critically low",
        unit="%",
    ),
    ThresholdConfig(
        key="meanRRI",
        parameter="Mean RRI",
        normal_range=NormalRange(min=600, max=1200),
        condition="outside",
        flag_instances=2,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name} is experiencing high stress (Mean RRI: {v} ms)",
        unit="ms",
    ),
    ThresholdConfig(
        key="parasympathetic",
        parameter="Parasympathetic NS",
        normal_range=NormalRange(min=50),
        condition="below",
        flag_instances=2,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name} is experiencing high stress (Parasympathetic HRV: {v} ms)",
        unit="ms HRV",
    ),
    ThresholdConfig(
        key="snsIndex",
        parameter="SNS Index",
        normal_range=NormalRange(max=5),
        condition="above",
        flag_instances=2,
        send_notification=True,
        critical_alert=True,
        message=lambda v, name: f"{name} is experiencing high stress (SNS Index: {v})",
    ),
    ThresholdConfig(
        key="alcoholDetection",
        parameter="Alcohol Detection",
        normal_range=NormalRange(),
        condition="detected",
        flag_instances=1,
        send_notification=True,
        critical_alert=True,
        message=lambda _v, name: f"Alcohol detected for driver {name}",
    ),
    ThresholdConfig(
        key="drowsinessDetection",
        parameter="Drowsiness Detection",
        normal_range=NormalRange(),
        condition="detected",
        flag_instances=1,
        send_notification=False,
        critical_alert=True,
        message=lambda _v, name: f"Drowsiness detected for driver {name}",
    ),
)

# Snapshot field names that differ from their registry key.
METRIC_ALIASES: Dict[str, str] = {
    "alcoholDetected": "alcoholDetection",
    "drowsinessDetected": "drowsinessDetection",
}


# PUBLIC_INTERFACE
def resolve_threshold(
    name: str, registry: Mapping[str, ThresholdConfig] = HEALTH_THRESHOLDS
) -> ThresholdConfig:
    """Look up a metric (or its alias) in the registry; raises UnknownParameterError."""
    key = METRIC_ALIASES.get(name, name)
    config = registry.get(key)
    if config is None:
        raise UnknownParameterError(name)
    return config


# PUBLIC_INTERFACE
def check_threshold(
    name: str, value: object, registry: Mapping[str, ThresholdConfig] = HEALTH_THRESHOLDS
) -> ThresholdResult:
    """Evaluate a reading against the registry entry for `name`."""
    return evaluate(resolve_threshold(name, registry), value)
