"""Memory snapshot and alert schemas for the ResourceTracker."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class MemorySnapshot(BaseModel, frozen=True):
    """Point-in-time buffer usage.  Diagnostics only."""

    num_buffers: int
    num_bytes: int
    timestamp: float
    context: str | None = None


class MemoryAlert(BaseModel, frozen=True):
    """An alert dispatched to registered alert callbacks."""

    level: Literal["warning", "critical"]
    message: str
    timestamp: float
    num_buffers: int
    num_bytes: int
    recommendations: list[str] = []


class UsagePercentage(BaseModel, frozen=True):
    """Usage as a percentage of the configured maxima."""

    buffers: float
    bytes: float


class MemoryStats(BaseModel, frozen=True):
    """Detailed usage report for a developer overlay."""

    num_buffers: int
    num_bytes: int
    usage: UsagePercentage
    trend: Literal["increasing", "decreasing", "stable"]
    recommendations: list[str]
    process_rss_bytes: int | None = None
