"""SpeedTracker: scheduled page-speed tests for repository-hosted sites."""

__version__ = "0.1.0"
