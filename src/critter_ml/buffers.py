"""Numeric buffer ownership layer.

Every tensor that flows through the pipeline is wrapped in a
:class:`NumericBuffer` registered with a :class:`BufferRegistry`.  The
registry is the backend-level accounting the ResourceTracker reads: it knows
how many buffers are live and how many bytes they hold.  ``dispose()`` is the
only way to release a buffer and is idempotent.
"""

from __future__ import annotations

import gc
import itertools
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import NamedTuple

import torch
from loguru import logger

from critter_ml.errors import BufferDisposedError

__all__ = ["BufferRegistry", "BufferScope", "MemoryInfo", "NumericBuffer"]

# Open scopes for the current task or worker thread, innermost last
_active_scopes: ContextVar[tuple[BufferScope, ...]] = ContextVar(
    "critter_ml_buffer_scopes", default=()
)


class MemoryInfo(NamedTuple):
    """Aggregate live buffer count and byte total."""

    num_buffers: int
    num_bytes: int


class NumericBuffer:
    """A disposable wrapper around a ``torch.Tensor`` with one logical owner.

    Reading :attr:`tensor` after :meth:`dispose` raises
    :class:`BufferDisposedError`.  Disposing twice is a no-op.
    """

    __slots__ = ("_id", "_nbytes", "_registry", "_shape", "_tensor", "name")

    def __init__(
        self,
        tensor: torch.Tensor,
        registry: BufferRegistry,
        buffer_id: int,
        name: str | None = None,
    ) -> None:
        self._tensor: torch.Tensor | None = tensor
        self._registry = registry
        self._id = buffer_id
        self._shape = tuple(tensor.shape)
        self._nbytes = tensor.element_size() * tensor.nelement()
        self.name = name

    @property
    def id(self) -> int:
        return self._id

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def nbytes(self) -> int:
        return self._nbytes

    @property
    def is_disposed(self) -> bool:
        return self._tensor is None

    @property
    def tensor(self) -> torch.Tensor:
        if self._tensor is None:
            raise BufferDisposedError(
                f"Buffer {self._id} ({self.name or 'unnamed'}) was already disposed",
                buffer_id=self._id,
                shape=self._shape,
            )
        return self._tensor

    def dispose(self) -> None:
        """Release the tensor and deregister.  Safe to call repeatedly."""
        if self._tensor is None:
            return
        self._tensor = None
        self._registry._release(self)

    def __repr__(self) -> str:
        state = "disposed" if self.is_disposed else "live"
        return f"NumericBuffer(id={self._id}, shape={self._shape}, {state})"


class BufferRegistry:
    """Backend-level accounting of live :class:`NumericBuffer` objects.

    One registry exists per engine session.  Buffers may be wrapped and
    disposed from worker threads (image decoding runs off the event loop),
    so the accounting is guarded by a lock.
    """

    def __init__(self) -> None:
        self._live: dict[int, NumericBuffer] = {}
        self._num_bytes = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def wrap(self, tensor: torch.Tensor, name: str | None = None) -> NumericBuffer:
        """Register ``tensor`` and return its owning buffer."""
        with self._lock:
            buffer = NumericBuffer(
                tensor.detach(), self, buffer_id=next(self._ids), name=name
            )
            self._live[buffer.id] = buffer
            self._num_bytes += buffer.nbytes
        for scope in reversed(_active_scopes.get()):
            if scope.registry is self:
                scope._track(buffer)
                break
        return buffer

    def _release(self, buffer: NumericBuffer) -> None:
        with self._lock:
            if self._live.pop(buffer.id, None) is not None:
                self._num_bytes -= buffer.nbytes

    def memory(self) -> MemoryInfo:
        with self._lock:
            return MemoryInfo(
                num_buffers=len(self._live), num_bytes=self._num_bytes
            )

    def live_buffers(self) -> list[NumericBuffer]:
        """Snapshot of currently live buffers, oldest first (leak detection)."""
        with self._lock:
            return list(self._live.values())

    def collect_garbage(self) -> MemoryInfo:
        """Run a backend-level garbage pass.

        Returns the number of buffers and bytes freed.  Live buffers are
        never disposed here: only their owners may do that.
        """
        before = self.memory()
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        after = self.memory()
        freed = MemoryInfo(
            num_buffers=before.num_buffers - after.num_buffers,
            num_bytes=before.num_bytes - after.num_bytes,
        )
        logger.debug(
            f"Garbage pass: {after.num_buffers} live buffers, "
            f"{after.num_bytes} bytes (freed {freed.num_bytes} bytes)"
        )
        return freed

    @contextmanager
    def scope(self) -> Iterator[BufferScope]:
        """Dispose every buffer created inside the block unless kept.

        Scopes are local to the asyncio task or worker thread that opens
        them: buffers wrapped concurrently elsewhere are not collected.

        Usage::

            with registry.scope() as scope:
                resized = registry.wrap(...)
                final = registry.wrap(...)
                scope.keep(final)
        """
        scope = BufferScope(self)
        token = _active_scopes.set((*_active_scopes.get(), scope))
        try:
            yield scope
        finally:
            _active_scopes.reset(token)
            scope._close()


class BufferScope:
    """Collects buffers created while active; see :meth:`BufferRegistry.scope`."""

    def __init__(self, registry: BufferRegistry) -> None:
        self.registry = registry
        self._buffers: list[NumericBuffer] = []
        self._kept: set[int] = set()

    def _track(self, buffer: NumericBuffer) -> None:
        self._buffers.append(buffer)

    def keep(self, buffer: NumericBuffer) -> NumericBuffer:
        """Exclude ``buffer`` from disposal at scope exit."""
        self._kept.add(buffer.id)
        return buffer

    def _close(self) -> None:
        for buffer in self._buffers:
            if buffer.id not in self._kept:
                buffer.dispose()
        self._buffers.clear()
