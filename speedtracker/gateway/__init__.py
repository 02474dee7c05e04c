"""Code-hosting API gateway for SpeedTracker."""

from speedtracker.gateway.github import GitHubGateway, Invitation

__all__ = ["GitHubGateway", "Invitation"]
