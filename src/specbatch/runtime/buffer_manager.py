"""Buffer manager: stream-bound tensor allocation with an optional caching pool."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import torch
from torch import Tensor

from specbatch.errors import OutOfMemoryError, ShapeError
from specbatch.runtime.stream import CudaStream, StreamEvent
from specbatch.runtime.tensor import MemoryKind, TensorHandle, allocate_region, volume

logger = logging.getLogger(__name__)

# Size classes for pooled regions.  Larger requests round up to 1 MiB.
_SIZE_CLASSES = [
    256,
    1024,
    4096,
    16384,
    65536,
    262144,
    1048576,
]
_LARGE_ROUNDING = 1048576


def _size_class(nbytes: int) -> int:
    for sc in _SIZE_CLASSES:
        if nbytes <= sc:
            return sc
    return ((nbytes + _LARGE_ROUNDING - 1) // _LARGE_ROUNDING) * _LARGE_ROUNDING


class BufferManager:
    """Allocates tensor handles against a single execution stream.

    In pooled mode, freed regions are kept on per-kind, per-size-class free
    lists and handed out again by later allocations of the same class.  This
    trades peak memory headroom for cheap allocate/free cycles, which is the
    access pattern of per-step decoding buffers.  ``trim_pool()`` gives the
    retained memory back.

    Not thread-safe: a manager expects a single writer at a time.

    Args:
        stream: The stream all allocations and copies are bound to.
        trim_pool: Trim the pool after every free instead of retaining regions.
        pool_quota_bytes: Upper bound on reserved bytes (in use + retained).
            ``None`` means unbounded.
        use_pool: Disable to allocate exact sizes and drop regions on free.
    """

    def __init__(
        self,
        stream: CudaStream,
        trim_pool: bool = False,
        *,
        pool_quota_bytes: int | None = None,
        use_pool: bool = True,
    ) -> None:
        if pool_quota_bytes is not None and pool_quota_bytes < 0:
            raise ValueError(f"pool_quota_bytes must be >= 0, got {pool_quota_bytes}")
        self._stream = stream
        self._trim_on_free = trim_pool
        self._quota = pool_quota_bytes
        self._use_pool = use_pool

        self._free_lists: dict[tuple[MemoryKind, int], list[Tensor]] = {}
        # data_ptr -> (kind, region bytes) for every region handed out.
        self._live: dict[int, tuple[MemoryKind, int]] = {}

        self._reserved = 0
        self._used = 0
        self._cached = 0
        self.num_allocations = 0
        self.num_reuses = 0

    @property
    def stream(self) -> CudaStream:
        return self._stream

    @property
    def device(self) -> torch.device:
        return self._stream.device

    @property
    def reserved_bytes(self) -> int:
        """Bytes held by the manager (in use + retained in the pool)."""
        return self._reserved

    @property
    def used_bytes(self) -> int:
        return self._used

    @property
    def cached_bytes(self) -> int:
        """Bytes retained on free lists, available for reuse."""
        return self._cached

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        shape: Sequence[int],
        dtype: torch.dtype,
        kind: MemoryKind = MemoryKind.DEVICE,
    ) -> TensorHandle:
        """Allocate an uninitialized tensor handle.

        Raises:
            OutOfMemoryError: If the quota or the underlying allocator is exhausted.
        """
        nbytes = volume(shape) * dtype.itemsize
        region = self.acquire_region(kind, nbytes)
        return TensorHandle(region, shape, dtype, kind, allocator=self)

    def gpu(self, shape: Sequence[int], dtype: torch.dtype) -> TensorHandle:
        return self.allocate(shape, dtype, MemoryKind.DEVICE)

    def cpu(self, shape: Sequence[int], dtype: torch.dtype) -> TensorHandle:
        return self.allocate(shape, dtype, MemoryKind.HOST)

    def pinned(self, shape: Sequence[int], dtype: torch.dtype) -> TensorHandle:
        return self.allocate(shape, dtype, MemoryKind.PINNED)

    def free(self, handle: TensorHandle) -> None:
        """Release a handle's region back to this manager.

        Raises:
            ValueError: If ``handle`` was already freed.
        """
        handle.release()

    def acquire_region(self, kind: MemoryKind, nbytes: int) -> Tensor:
        """Hand out a raw region of at least ``nbytes`` bytes."""
        region_bytes = _size_class(nbytes) if self._use_pool else max(nbytes, 1)

        free_list = self._free_lists.get((kind, region_bytes))
        if free_list:
            region = free_list.pop()
            self._cached -= region_bytes
            self._used += region_bytes
            self._live[region.data_ptr()] = (kind, region_bytes)
            self.num_allocations += 1
            self.num_reuses += 1
            return region

        if self._quota is not None and self._reserved + region_bytes > self._quota:
            logger.warning(
                "Pool quota exceeded: requested %d, reserved %d, quota %d",
                region_bytes,
                self._reserved,
                self._quota,
            )
            raise OutOfMemoryError(
                f"Buffer pool quota exceeded: requested {region_bytes} bytes, "
                f"reserved {self._reserved}, quota {self._quota}"
            )

        region = allocate_region(kind, region_bytes, self.device)
        self._reserved += region_bytes
        self._used += region_bytes
        self._live[region.data_ptr()] = (kind, region_bytes)
        self.num_allocations += 1
        return region

    def reclaim_region(self, kind: MemoryKind, region: Tensor) -> None:
        """Take a region back.  Raises ``ValueError`` on double free."""
        entry = self._live.pop(region.data_ptr(), None)
        if entry is None:
            raise ValueError(
                f"Cannot free region at {region.data_ptr():#x}: not currently allocated "
                f"(double-free or foreign region)"
            )
        _, region_bytes = entry
        self._used -= region_bytes
        if not self._use_pool:
            self._reserved -= region_bytes
            return
        self._free_lists.setdefault((kind, region_bytes), []).append(region)
        self._cached += region_bytes
        if self._trim_on_free:
            self.trim_pool()

    def trim_pool(self) -> int:
        """Release all retained-but-unused regions.  Returns bytes released."""
        released = self._cached
        self._free_lists.clear()
        self._reserved -= released
        self._cached = 0
        if released and self._stream.is_cuda:
            # Wait for in-flight work that may still read the regions.
            self._stream.synchronize()
            torch.cuda.empty_cache()
        if released:
            logger.info("Trimmed buffer pool: released %d bytes", released)
        return released

    # ------------------------------------------------------------------
    # Stream-ordered operations
    # ------------------------------------------------------------------

    def copy(self, src: TensorHandle, dst: TensorHandle) -> StreamEvent:
        """Copy ``src`` into ``dst`` on the manager's stream.

        Returns a completion handle; the caller must ``wait()`` on it before
        reading ``dst`` from the host or mutating ``src``.
        """
        if src.size != dst.size:
            raise ShapeError(f"Copy size mismatch: {src.size} != {dst.size}")
        if src.dtype != dst.dtype:
            raise ValueError(f"Copy dtype mismatch: {src.dtype} != {dst.dtype}")
        with self._stream.use():
            dst.data.view(-1).copy_(src.data.view(-1), non_blocking=True)
        return self._stream.record()

    def set_zero(self, handle: TensorHandle) -> StreamEvent:
        """Zero ``handle`` on the manager's stream."""
        with self._stream.use():
            handle.data.zero_()
        return self._stream.record()

    def __repr__(self) -> str:
        return (
            f"BufferManager(stream={self._stream}, reserved={self._reserved}, "
            f"used={self._used}, cached={self._cached})"
        )
