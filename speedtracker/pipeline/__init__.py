"""Scheduling and execution pipeline for SpeedTracker."""

from speedtracker.pipeline.executor import TestExecutor
from speedtracker.pipeline.profiles import ProfileCache, parse_profile
from speedtracker.pipeline.scheduler import FlightRegistry, Scheduler, backoff_interval

__all__ = [
    "FlightRegistry",
    "ProfileCache",
    "Scheduler",
    "TestExecutor",
    "backoff_interval",
    "parse_profile",
]
