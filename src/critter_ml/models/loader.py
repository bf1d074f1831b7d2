"""Single-flight feature extractor loader with bounded timeout and retry."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from enum import Enum

from loguru import logger

from critter_ml.buffers import BufferRegistry
from critter_ml.config import LoaderConfig
from critter_ml.errors import ModelLoadError
from critter_ml.models.extractor import (
    BundledModelSource,
    ExtractorHandle,
    ModelSource,
    RemoteModelSource,
)

__all__ = ["ExtractorLoader", "LoaderState"]


class LoaderState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ExtractorLoader:
    """Acquire the frozen feature extractor once per session.

    Each attempt tries the sources in order (bundled first, then remote)
    and is raced against ``model_load_timeout_ms``.  A timed-out attempt is
    abandoned, not cancelled: its worker thread may finish later and the
    result is discarded.  Concurrent :meth:`load` calls share one in-flight
    attempt sequence.

    Args:
        registry: Buffer registry embeddings produced by the handle go to.
        config: Timeouts, retry bound and bundled artifact path.
        sources: Override the default bundled-then-remote source list.
    """

    def __init__(
        self,
        registry: BufferRegistry,
        config: LoaderConfig | None = None,
        sources: Sequence[ModelSource] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or LoaderConfig()
        if sources is None:
            default: list[ModelSource] = []
            if self.config.bundled_model_path:
                default.append(BundledModelSource(self.config.bundled_model_path))
            default.append(RemoteModelSource(self.config.input_shape))
            sources = default
        if not sources:
            raise ValueError("ExtractorLoader needs at least one model source")
        self.sources = list(sources)
        self.state = LoaderState.UNLOADED
        self.handle: ExtractorHandle | None = None
        self.load_time_s: float | None = None
        self._inflight: asyncio.Future[ExtractorHandle] | None = None

    @property
    def is_loaded(self) -> bool:
        return self.state is LoaderState.READY and self.handle is not None

    async def load(self) -> ExtractorHandle:
        """Return the ready handle, loading it if needed (single-flight)."""
        if self.is_loaded:
            return self.handle  # type: ignore[return-value]
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._load_with_retries())
            self._inflight.add_done_callback(self._clear_inflight)
        # Shield: one caller giving up must not cancel the shared load
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, future: asyncio.Future[ExtractorHandle]) -> None:
        self._inflight = None
        if not future.cancelled():
            # Mark retrieved; every awaiting caller still receives it
            future.exception()

    async def _load_with_retries(self) -> ExtractorHandle:
        self.state = LoaderState.LOADING
        max_attempts = self.config.max_load_retries
        timeout_s = self.config.model_load_timeout_ms / 1000
        backoff_s = self.config.retry_backoff_ms / 1000
        start = time.monotonic()
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            logger.info(
                f"Loading feature extractor (attempt {attempt}/{max_attempts})"
            )
            try:
                handle = await asyncio.wait_for(
                    asyncio.to_thread(self._attempt_load), timeout=timeout_s
                )
            except ModelLoadError as err:
                # Contract or shape violations are deterministic: no retry
                self.state = LoaderState.FAILED
                err.attempts = attempt
                err.context["attempts"] = attempt
                logger.error(f"Feature extractor rejected: {err}")
                raise
            except TimeoutError as err:
                last_error = err
                logger.warning(
                    f"Load attempt {attempt} timed out after "
                    f"{self.config.model_load_timeout_ms}ms"
                )
            except Exception as err:
                last_error = err
                logger.warning(f"Load attempt {attempt} failed: {err!r}")
            else:
                self.handle = handle
                self.state = LoaderState.READY
                self.load_time_s = time.monotonic() - start
                logger.info(
                    f"Feature extractor ready from {handle.source} on attempt "
                    f"{attempt} (embedding_size={handle.embedding_size}, "
                    f"{self.load_time_s:.2f}s)"
                )
                return handle

            if attempt < max_attempts:
                logger.info(f"Retrying in {self.config.retry_backoff_ms}ms...")
                await asyncio.sleep(backoff_s)

        self.state = LoaderState.FAILED
        message = (
            f"Model loading failed after {max_attempts} attempts. "
            f"Last error: {last_error!r}"
        )
        logger.error(message)
        raise ModelLoadError(message, attempts=max_attempts) from last_error

    def _attempt_load(self) -> ExtractorHandle:
        """One blocking attempt over all sources, in order.

        A source that fails to load, or whose network fails its trial forward
        pass, falls through to the next source.  Contract and shape violations
        raise :class:`ModelLoadError` immediately.
        """
        last_error: Exception | None = None
        for source in self.sources:
            try:
                network = source.load()
                return ExtractorHandle.from_network(
                    network,
                    source=source.name,
                    registry=self.registry,
                    expected_input_shape=self.config.input_shape,
                )
            except ModelLoadError:
                raise
            except Exception as err:
                last_error = err
                logger.warning(
                    f"Feature extractor source '{source.name}' failed: {err!r}"
                )
        if last_error is None:
            raise ModelLoadError("No feature extractor sources configured")
        raise last_error

    def release(self) -> None:
        """Dispose the handle and return to UNLOADED."""
        if self.handle is not None:
            self.handle.dispose()
        self.handle = None
        self.state = LoaderState.UNLOADED
        self.load_time_s = None
