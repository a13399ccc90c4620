"""Reading classification.

Pure and deterministic: no I/O, no side effects. Used server-side for
alerting and as the reference behaviour in tests.
"""

from __future__ import annotations

from feverwatch.exceptions import InvalidReadingError
from feverwatch.models.reading import ClassifiedEvent, FeverSeverity, Reading

DEFAULT_FEVER_THRESHOLD = 37.5
PLAUSIBLE_RANGE = (30.0, 45.0)

# Upper bounds (exclusive) of degrees above threshold for each tier;
# anything at or beyond the last bound is critical.
SEVERITY_BREAKPOINTS: tuple[tuple[float, FeverSeverity], ...] = (
    (0.5, FeverSeverity.MILD),
    (1.0, FeverSeverity.MODERATE),
    (2.0, FeverSeverity.HIGH),
)


def severity_for_delta(delta: float) -> FeverSeverity:
    """Map degrees above the threshold to a severity tier."""
    if delta < 0:
        return FeverSeverity.NONE
    for bound, severity in SEVERITY_BREAKPOINTS:
        if delta < bound:
            return severity
    return FeverSeverity.CRITICAL


def classify(
    reading: Reading,
    *,
    threshold: float = DEFAULT_FEVER_THRESHOLD,
    plausible_range: tuple[float, float] = PLAUSIBLE_RANGE,
) -> ClassifiedEvent:
    """Validate *reading* and compute its fever classification.

    Raises
    ------
    InvalidReadingError
        The reading is flagged invalid, has no temperature, or lies
        outside *plausible_range*.
    """
    temperature = reading.temperature
    if not reading.is_valid:
        raise InvalidReadingError(
            f"Reading {reading.id} from {reading.device_id} is flagged invalid",
            device_id=reading.device_id,
            temperature=temperature,
            reason="flagged_invalid",
        )
    if temperature is None:
        raise InvalidReadingError(
            f"Reading {reading.id} from {reading.device_id} has no temperature",
            device_id=reading.device_id,
            reason="missing_temperature",
        )
    low, high = plausible_range
    if not low <= temperature <= high:
        raise InvalidReadingError(
            f"Temperature {temperature}°C from {reading.device_id} outside [{low}, {high}]",
            device_id=reading.device_id,
            temperature=temperature,
            reason="out_of_range",
        )

    fever_detected = temperature >= threshold
    severity = FeverSeverity.NONE
    if fever_detected:
        # Rounding only picks the tier; 37.9 - 37.5 would otherwise land at 0.39999.
        severity = severity_for_delta(max(round(temperature - threshold, 1), 0.0))
    return ClassifiedEvent(
        reading=reading,
        fever_detected=fever_detected,
        fever_severity=severity,
        threshold=threshold,
    )


def validate_reading(reading: Reading, *, plausible_range: tuple[float, float] = PLAUSIBLE_RANGE) -> list[str]:
    """List everything that makes *reading* untrustworthy. Empty means valid."""
    issues: list[str] = []
    temperature = reading.temperature
    low, high = plausible_range
    if temperature is None:
        issues.append("Missing temperature")
    elif not low <= temperature <= high:
        issues.append("Temperature out of normal range")
    issues.extend(reading.sensor_issues())
    return issues
