"""API routers."""

from delegation.routers import callbacks, health, jobs, metrics

__all__ = ["callbacks", "health", "jobs", "metrics"]
