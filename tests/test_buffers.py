"""Tests for NumericBuffer, BufferRegistry and BufferScope."""

from __future__ import annotations

import asyncio

import pytest
import torch

from critter_ml.buffers import BufferRegistry, NumericBuffer
from critter_ml.errors import BufferDisposedError


class TestNumericBuffer:
    def test_dispose_twice_is_noop(self, registry: BufferRegistry) -> None:
        buf = registry.wrap(torch.zeros(2, 3))
        buf.dispose()
        buf.dispose()
        assert buf.is_disposed
        assert registry.memory().num_buffers == 0

    def test_read_after_dispose_raises(self, registry: BufferRegistry) -> None:
        buf = registry.wrap(torch.ones(4), name="scratch")
        buf.dispose()
        with pytest.raises(BufferDisposedError, match="scratch"):
            _ = buf.tensor

    def test_shape_and_nbytes_survive_disposal(self, registry: BufferRegistry) -> None:
        buf = registry.wrap(torch.zeros(1, 224, 224, 3))
        buf.dispose()
        assert buf.shape == (1, 224, 224, 3)
        assert buf.nbytes == 224 * 224 * 3 * 4

    def test_wrap_detaches(self, registry: BufferRegistry) -> None:
        t = torch.ones(3, requires_grad=True)
        buf = registry.wrap(t * 2)
        assert not buf.tensor.requires_grad


class TestBufferRegistry:
    def test_memory_accounting(self, registry: BufferRegistry) -> None:
        a = registry.wrap(torch.zeros(10, dtype=torch.float32))
        b = registry.wrap(torch.zeros(5, dtype=torch.float64))
        assert registry.memory() == (2, 10 * 4 + 5 * 8)
        a.dispose()
        assert registry.memory() == (1, 5 * 8)
        b.dispose()
        assert registry.memory() == (0, 0)

    def test_live_buffers_for_leak_detection(self, registry: BufferRegistry) -> None:
        kept = registry.wrap(torch.zeros(1), name="leak")
        registry.wrap(torch.zeros(1)).dispose()
        assert registry.live_buffers() == [kept]

    def test_collect_garbage_does_not_dispose_live(self, registry: BufferRegistry) -> None:
        buf = registry.wrap(torch.zeros(8))
        freed = registry.collect_garbage()
        assert freed.num_buffers == 0
        assert not buf.is_disposed


class TestBufferScope:
    def test_unkept_buffers_disposed_on_exit(self, registry: BufferRegistry) -> None:
        with registry.scope() as scope:
            tmp = registry.wrap(torch.zeros(3))
            final = scope.keep(registry.wrap(torch.ones(3)))
        assert tmp.is_disposed
        assert not final.is_disposed
        assert registry.memory().num_buffers == 1

    def test_disposed_on_error(self, registry: BufferRegistry) -> None:
        with pytest.raises(RuntimeError):
            with registry.scope():
                tmp = registry.wrap(torch.zeros(3))
                raise RuntimeError("boom")
        assert tmp.is_disposed
        assert registry.memory().num_buffers == 0

    def test_buffers_outside_scope_untouched(self, registry: BufferRegistry) -> None:
        outer = registry.wrap(torch.zeros(2))
        with registry.scope():
            registry.wrap(torch.zeros(2))
        assert not outer.is_disposed

    def test_scope_in_worker_thread_ignores_loop_buffers(
        self, registry: BufferRegistry
    ) -> None:
        def work() -> torch.Tensor:
            with registry.scope():
                tmp = registry.wrap(torch.ones(3))
                return tmp.tensor * 2

        async def run() -> tuple[torch.Tensor, NumericBuffer]:
            outer = registry.wrap(torch.zeros(2))
            result = await asyncio.to_thread(work)
            return result, outer

        result, outer = asyncio.run(run())
        assert result.tolist() == [2.0, 2.0, 2.0]
        assert registry.live_buffers() == [outer]

    def test_scopes_are_task_local(self, registry: BufferRegistry) -> None:
        async def scoped(release: asyncio.Event) -> None:
            with registry.scope():
                registry.wrap(torch.zeros(1))
                await release.wait()

        async def run() -> NumericBuffer:
            release = asyncio.Event()
            task = asyncio.create_task(scoped(release))
            await asyncio.sleep(0)
            other = registry.wrap(torch.zeros(1))
            release.set()
            await task
            return other

        other = asyncio.run(run())
        assert registry.live_buffers() == [other]
