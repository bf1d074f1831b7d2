"""Resource tracker for numeric buffers.

Watches the :class:`~critter_ml.buffers.BufferRegistry` of one session, keeps
a bounded snapshot history, raises warning/critical alerts and performs
escalating cleanup:

- warning level: forced garbage pass, at most one alert per cooldown window
- critical level: emergency cleanup (registered callbacks, garbage pass,
  re-measure) and :class:`MemoryExhaustedError` if still unsafe
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import psutil  # type: ignore[import-untyped]
from loguru import logger

from critter_ml.buffers import BufferRegistry, MemoryInfo, NumericBuffer
from critter_ml.config import TrackerConfig
from critter_ml.errors import CritterMLError, MemoryExhaustedError
from critter_ml.schemas.memory import (
    MemoryAlert,
    MemorySnapshot,
    MemoryStats,
    UsagePercentage,
)

__all__ = ["ResourceTracker"]

T = TypeVar("T")

CleanupCallback = Callable[[], None]
AlertCallback = Callable[[MemoryAlert], None]

# Snapshot-to-snapshot byte change that counts as a trend
_TREND_THRESHOLD_BYTES = 1024 * 1024


class ResourceTracker:
    """Tracks and bounds buffer usage for one engine session.

    Args:
        registry: The session's buffer registry.
        config: Thresholds, history sizes and timer intervals.
    """

    def __init__(
        self,
        registry: BufferRegistry,
        config: TrackerConfig | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or TrackerConfig()
        self.thresholds = self.config.thresholds
        self._snapshots: deque[MemorySnapshot] = deque(
            maxlen=self.config.snapshot_history_size
        )
        self._alerts: deque[MemoryAlert] = deque(
            maxlen=self.config.max_alerts_history
        )
        self._cleanup_callbacks: list[CleanupCallback] = []
        self._alert_callbacks: list[AlertCallback] = []
        self._last_alert_time: float | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self.last_exhaustion: MemoryExhaustedError | None = None

    # ------------------------------------------------------------------
    # Snapshots and tracking
    # ------------------------------------------------------------------
    def get_current_usage(self) -> MemoryInfo:
        return self.registry.memory()

    def take_snapshot(self, context: str | None = None) -> MemorySnapshot:
        """Record current usage in the bounded history and return it."""
        usage = self.registry.memory()
        snapshot = MemorySnapshot(
            num_buffers=usage.num_buffers,
            num_bytes=usage.num_bytes,
            timestamp=time.time(),
            context=context,
        )
        self._snapshots.append(snapshot)
        return snapshot

    def get_history(self) -> list[MemorySnapshot]:
        return list(self._snapshots)

    @asynccontextmanager
    async def tracking(self, context: str) -> AsyncIterator[MemorySnapshot]:
        """Snapshot before and after the block, even when it raises.

        On error the exception is annotated with the before-snapshot and
        re-raised unchanged.
        """
        before = self.take_snapshot(f"{context}_before")
        try:
            yield before
        except BaseException as err:
            after = self.take_snapshot(f"{context}_error")
            self._log_delta(before, after, context)
            err.add_note(
                f"memory before {context}: {before.num_buffers} buffers, "
                f"{before.num_bytes} bytes"
            )
            if isinstance(err, CritterMLError):
                err.context.setdefault("before_snapshot", before)
            raise
        else:
            after = self.take_snapshot(f"{context}_after")
            self._log_delta(before, after, context)

    async def with_tracking(
        self, context: str, fn: Callable[[], Awaitable[T] | T]
    ) -> T:
        """Run ``fn`` (sync or async) inside :meth:`tracking`."""
        async with self.tracking(context):
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result  # type: ignore[return-value]

    def _log_delta(
        self, before: MemorySnapshot, after: MemorySnapshot, context: str
    ) -> None:
        d_buffers = after.num_buffers - before.num_buffers
        d_bytes = after.num_bytes - before.num_bytes
        duration_ms = (after.timestamp - before.timestamp) * 1000
        if d_buffers > 0 or abs(d_bytes) > _TREND_THRESHOLD_BYTES:
            logger.info(
                f"Memory delta {context}: buffers {d_buffers:+d}, "
                f"bytes {d_bytes / 1024 / 1024:+.2f}MB, {duration_ms:.0f}ms"
            )
        else:
            logger.debug(
                f"Memory delta {context}: buffers {d_buffers:+d}, "
                f"{duration_ms:.0f}ms"
            )

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------
    def safe_dispose(self, buffer: NumericBuffer | None) -> None:
        """Dispose ``buffer`` if present and live.  Never raises."""
        if buffer is None or buffer.is_disposed:
            return
        try:
            buffer.dispose()
        except Exception:
            logger.exception(
                f"Failed to dispose buffer {buffer.id} shape={buffer.shape}"
            )

    def safe_dispose_all(
        self, buffers: Iterable[NumericBuffer | None]
    ) -> None:
        for buffer in buffers:
            self.safe_dispose(buffer)

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------
    def is_usage_safe(self) -> bool:
        usage = self.registry.memory()
        return (
            usage.num_buffers <= self.thresholds.max_buffers
            and usage.num_bytes <= self.thresholds.max_buffer_bytes
        )

    def get_usage_percentage(self) -> UsagePercentage:
        usage = self.registry.memory()
        return UsagePercentage(
            buffers=usage.num_buffers / self.thresholds.max_buffers * 100,
            bytes=usage.num_bytes / self.thresholds.max_buffer_bytes * 100,
        )

    def _is_critical(self, usage: MemoryInfo) -> bool:
        return (
            usage.num_buffers > self.thresholds.max_buffers
            or usage.num_bytes > self.thresholds.max_buffer_bytes
        )

    def _is_warning(self, usage: MemoryInfo) -> bool:
        return (
            usage.num_buffers > self.thresholds.warning_buffers
            or usage.num_bytes > self.thresholds.warning_buffer_bytes
        )

    def check_usage(self, now: float | None = None) -> None:
        """One periodic check.  ``now`` is a monotonic time in seconds."""
        now = time.monotonic() if now is None else now
        usage = self.registry.memory()

        if self._is_critical(usage):
            logger.error(
                f"Critical memory usage: {usage.num_buffers} buffers, "
                f"{usage.num_bytes} bytes"
            )
            self._send_alert(
                "critical",
                "Critical memory usage detected - performing emergency cleanup",
                usage,
                [
                    "Emergency cleanup in progress",
                    "Consider reducing model complexity",
                    "Check for buffer leaks in tensor operations",
                ],
            )
            self.perform_emergency_cleanup()
            return

        if self._is_warning(usage):
            logger.warning(
                f"High memory usage: {usage.num_buffers} buffers, "
                f"{usage.num_bytes} bytes"
            )
            cooldown_s = self.config.alert_cooldown_ms / 1000
            if (
                self._last_alert_time is None
                or now - self._last_alert_time > cooldown_s
            ):
                self._send_alert(
                    "warning",
                    "High memory usage detected",
                    usage,
                    [
                        "Consider disposing unused buffers",
                        "Check for buffer leaks",
                        "Monitor memory usage trends",
                    ],
                )
                self._last_alert_time = now
            self.force_garbage_collection()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def register_cleanup_callback(self, callback: CleanupCallback) -> Callable[[], None]:
        """Register ``callback`` for emergency cleanup; returns an unregister function."""
        self._cleanup_callbacks.append(callback)

        def unregister() -> None:
            if callback in self._cleanup_callbacks:
                self._cleanup_callbacks.remove(callback)

        return unregister

    def register_alert_callback(self, callback: AlertCallback) -> Callable[[], None]:
        self._alert_callbacks.append(callback)

        def unregister() -> None:
            if callback in self._alert_callbacks:
                self._alert_callbacks.remove(callback)

        return unregister

    def execute_cleanup_callbacks(self) -> None:
        """Run cleanup callbacks in registration order.

        A failing callback is logged and does not stop the rest.
        """
        for index, callback in enumerate(list(self._cleanup_callbacks)):
            try:
                callback()
            except Exception:
                logger.exception(f"Cleanup callback {index} failed")

    def force_garbage_collection(self) -> MemoryInfo:
        freed = self.registry.collect_garbage()
        logger.debug(
            f"Forced garbage collection freed {freed.num_buffers} buffers, "
            f"{freed.num_bytes} bytes"
        )
        return freed

    def perform_emergency_cleanup(self) -> MemorySnapshot:
        """Run every cleanup stage and re-measure.

        Raises:
            MemoryExhaustedError: usage is still over the maxima afterwards.
        """
        logger.warning("Performing emergency memory cleanup")
        self.execute_cleanup_callbacks()
        self.force_garbage_collection()
        snapshot = self.take_snapshot("emergency_cleanup")

        if not self.is_usage_safe():
            logger.error(
                "Emergency cleanup failed to bring memory usage to safe levels"
            )
            raise MemoryExhaustedError(
                "Emergency cleanup insufficient: "
                f"{snapshot.num_buffers} buffers, {snapshot.num_bytes} bytes "
                f"(limits {self.thresholds.max_buffers} buffers, "
                f"{self.thresholds.max_buffer_bytes} bytes)",
                num_buffers=snapshot.num_buffers,
                num_bytes=snapshot.num_bytes,
            )
        return snapshot

    def optimize_memory_usage(self) -> MemorySnapshot:
        """Progressive cleanup scaled to the current usage percentage."""
        usage = self.get_usage_percentage()
        logger.info(
            f"Optimizing memory usage: buffers {usage.buffers:.0f}%, "
            f"bytes {usage.bytes:.0f}%"
        )
        if usage.buffers > 80 or usage.bytes > 80:
            self.perform_emergency_cleanup()
        elif usage.buffers > 60 or usage.bytes > 60:
            self.force_garbage_collection()
        else:
            self.execute_cleanup_callbacks()
        return self.take_snapshot("memory_optimization")

    # ------------------------------------------------------------------
    # Alerts and diagnostics
    # ------------------------------------------------------------------
    def _send_alert(
        self,
        level: str,
        message: str,
        usage: MemoryInfo,
        recommendations: list[str],
    ) -> None:
        alert = MemoryAlert(
            level=level,  # type: ignore[arg-type]
            message=message,
            timestamp=time.time(),
            num_buffers=usage.num_buffers,
            num_bytes=usage.num_bytes,
            recommendations=recommendations,
        )
        self._alerts.append(alert)
        for callback in list(self._alert_callbacks):
            try:
                callback(alert)
            except Exception:
                logger.exception("Memory alert callback failed")

    def get_alerts_history(self) -> list[MemoryAlert]:
        return list(self._alerts)

    def clear_alerts_history(self) -> None:
        self._alerts.clear()

    def calculate_trend(self) -> str:
        """Average byte change across the last three snapshots."""
        if len(self._snapshots) < 3:
            return "stable"
        recent = list(self._snapshots)[-3:]
        changes = [
            recent[i].num_bytes - recent[i - 1].num_bytes
            for i in range(1, len(recent))
        ]
        avg = sum(changes) / len(changes)
        if avg > _TREND_THRESHOLD_BYTES:
            return "increasing"
        if avg < -_TREND_THRESHOLD_BYTES:
            return "decreasing"
        return "stable"

    def get_detailed_stats(self) -> MemoryStats:
        usage = self.registry.memory()
        percentage = self.get_usage_percentage()
        trend = self.calculate_trend()

        recommendations: list[str] = []
        if percentage.buffers > 90:
            recommendations += [
                "Critical: Too many buffers in memory",
                "Dispose buffers immediately after use",
            ]
        elif percentage.buffers > 70:
            recommendations += [
                "High buffer count detected",
                "Consider batching operations",
            ]
        if percentage.bytes > 90:
            recommendations += [
                "Critical: Memory usage very high",
                "Reduce model size or batch size",
            ]
        elif percentage.bytes > 70:
            recommendations += [
                "High memory usage detected",
                "Monitor for memory leaks",
            ]
        if trend == "increasing":
            recommendations += [
                "Memory usage is trending upward",
                "Check for buffer disposal in loops",
            ]
        if not recommendations:
            recommendations.append("Memory usage is within normal limits")

        return MemoryStats(
            num_buffers=usage.num_buffers,
            num_bytes=usage.num_bytes,
            usage=percentage,
            trend=trend,  # type: ignore[arg-type]
            recommendations=recommendations,
            process_rss_bytes=psutil.Process().memory_info().rss,
        )

    # ------------------------------------------------------------------
    # Periodic monitoring
    # ------------------------------------------------------------------
    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def start_monitoring(self) -> None:
        """Start the periodic check on the running event loop."""
        if self.is_monitoring:
            return
        self._monitor_task = asyncio.get_running_loop().create_task(
            self._monitor_loop(), name="critter-ml-memory-monitor"
        )
        self.take_snapshot("monitoring_started")
        logger.info(
            f"Memory monitoring started (every {self.config.monitoring_interval_ms}ms)"
        )

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Memory monitoring stopped")

    async def _monitor_loop(self) -> None:
        interval_s = self.config.monitoring_interval_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.check_usage()
            except MemoryExhaustedError as err:
                self.last_exhaustion = err
                logger.error(f"Memory exhausted during periodic check: {err}")
                self._send_alert(
                    "critical",
                    str(err),
                    self.registry.memory(),
                    ["Restart the engine to recover memory"],
                )

    async def shutdown(self) -> None:
        """Stop monitoring, run cleanup callbacks and clear history."""
        await self.stop_monitoring()
        self.execute_cleanup_callbacks()
        self._snapshots.clear()
        logger.info("Resource tracker shut down")

    def describe(self) -> dict[str, Any]:
        usage = self.registry.memory()
        return {
            "num_buffers": usage.num_buffers,
            "num_bytes": usage.num_bytes,
            "is_safe": self.is_usage_safe(),
            "monitoring": self.is_monitoring,
        }
