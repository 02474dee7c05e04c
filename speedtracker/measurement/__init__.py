"""Measurement providers for SpeedTracker."""

from speedtracker.measurement.provider import (
    MeasurementProvider,
    WebPageTestProvider,
    normalize_metrics,
)

__all__ = ["MeasurementProvider", "WebPageTestProvider", "normalize_metrics"]
