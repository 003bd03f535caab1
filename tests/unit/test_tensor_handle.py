"""Unit tests for TensorHandle."""

from __future__ import annotations

import pytest
import torch

from specbatch.errors import AllocationError, ShapeError
from specbatch.runtime.buffer_manager import BufferManager
from specbatch.runtime.stream import CudaStream
from specbatch.runtime.tensor import MemoryKind, TensorHandle, allocate_region


def _manager() -> BufferManager:
    return BufferManager(CudaStream("cpu"))


class TestConstruction:
    def test_allocate_shape_and_dtype(self) -> None:
        handle = _manager().cpu((2, 3), torch.int32)
        assert handle.shape == (2, 3)
        assert handle.dtype == torch.int32
        assert handle.size == 6
        assert handle.nbytes == 24
        assert handle.data.shape == (2, 3)

    def test_memory_type_names(self) -> None:
        mgr = _manager()
        assert mgr.cpu((1,), torch.float32).memory_type_name == "CPU"
        assert mgr.gpu((1,), torch.float32).memory_type_name == "GPU"
        assert mgr.pinned((1,), torch.float32).memory_type_name == "PINNED"
        assert mgr.allocate((1,), torch.float32, MemoryKind.UNIFIED).memory_type_name == "UVM"

    def test_wrap_existing_tensor(self) -> None:
        """wrap adopts the tensor's storage without copying."""
        t = torch.arange(6, dtype=torch.int64).reshape(2, 3)
        handle = TensorHandle.wrap(t)
        assert handle.shape == (2, 3)
        assert handle.memory_kind is MemoryKind.HOST
        handle.data[0, 0] = 42
        assert t[0, 0] == 42

    def test_wrap_rejects_non_contiguous(self) -> None:
        t = torch.zeros(4, 4).t()
        with pytest.raises(ValueError, match="contiguous"):
            TensorHandle.wrap(t)

    def test_negative_dimension_rejected(self) -> None:
        region = allocate_region(MemoryKind.HOST, 16, "cpu")
        with pytest.raises(ShapeError):
            TensorHandle(region, (-1, 4), torch.int32, MemoryKind.HOST)

    def test_shape_larger_than_region_rejected(self) -> None:
        region = allocate_region(MemoryKind.HOST, 8, "cpu")
        with pytest.raises(ValueError, match="exceeds region"):
            TensorHandle(region, (4,), torch.int32, MemoryKind.HOST)


class TestResize:
    def test_shrink_keeps_region(self) -> None:
        """Shrinking never reallocates."""
        handle = _manager().cpu((10,), torch.int32)
        ptr = handle.data_ptr
        capacity = handle.capacity
        handle.resize(3)
        assert handle.size == 3
        assert handle.shape == (3,)
        assert handle.data_ptr == ptr
        assert handle.capacity == capacity

    def test_grow_within_capacity_keeps_region(self) -> None:
        """A 40-byte request sits in a 256-byte size class: 64 int32 slots."""
        handle = _manager().cpu((10,), torch.int32)
        ptr = handle.data_ptr
        assert handle.capacity == 64
        handle.resize(64)
        assert handle.data_ptr == ptr
        assert handle.size == 64

    def test_grow_past_capacity_preserves_prefix(self) -> None:
        mgr = _manager()
        handle = mgr.cpu((4,), torch.int32)
        handle.data.copy_(torch.tensor([1, 2, 3, 4], dtype=torch.int32))
        ptr = handle.data_ptr
        handle.resize(100)
        assert handle.data_ptr != ptr
        assert handle.capacity >= 100
        assert handle.data[:4].tolist() == [1, 2, 3, 4]
        # The old region went back to the pool.
        assert mgr.cached_bytes == 256

    def test_grow_wrapped_handle(self) -> None:
        """Handles without a manager allocate a new region directly."""
        handle = TensorHandle.wrap(torch.tensor([7, 8], dtype=torch.int32))
        handle.resize(5)
        assert handle.size == 5
        assert handle.data[:2].tolist() == [7, 8]

    def test_failed_growth_leaves_data_intact(self) -> None:
        mgr = BufferManager(CudaStream("cpu"), pool_quota_bytes=256)
        handle = mgr.cpu((4,), torch.int32)
        handle.data.copy_(torch.tensor([1, 2, 3, 4], dtype=torch.int32))
        ptr = handle.data_ptr
        with pytest.raises(AllocationError):
            handle.resize(1000)
        assert handle.data_ptr == ptr
        assert handle.size == 4
        assert handle.data.tolist() == [1, 2, 3, 4]

    def test_resize_to_zero(self) -> None:
        handle = _manager().cpu((4,), torch.int32)
        handle.resize(0)
        assert handle.size == 0
        assert handle.data.numel() == 0

    def test_negative_size(self) -> None:
        handle = _manager().cpu((4,), torch.int32)
        with pytest.raises(ShapeError, match="negative"):
            handle.resize(-1)


class TestReshape:
    def test_reshape_same_volume(self) -> None:
        handle = _manager().cpu((12,), torch.float32)
        handle.reshape((3, 4))
        assert handle.shape == (3, 4)
        assert handle.data.shape == (3, 4)

    def test_reshape_volume_mismatch(self) -> None:
        handle = _manager().cpu((12,), torch.float32)
        with pytest.raises(ShapeError, match="Cannot reshape"):
            handle.reshape((5, 3))
        assert handle.shape == (12,)

    def test_reshape_negative_dims(self) -> None:
        handle = _manager().cpu((4,), torch.float32)
        with pytest.raises(ShapeError):
            handle.reshape((-2, -2))


class TestSnapshotAndRelease:
    def test_to_host_is_a_copy(self) -> None:
        handle = _manager().cpu((3,), torch.int32)
        handle.data.fill_(5)
        snap = handle.to_host()
        handle.data.fill_(9)
        assert snap.tolist() == [5, 5, 5]

    def test_release_returns_region(self) -> None:
        mgr = _manager()
        handle = mgr.cpu((3,), torch.int32)
        assert mgr.used_bytes == 256
        handle.release()
        assert handle.size == 0
        assert handle.capacity == 0
        assert mgr.used_bytes == 0
        assert mgr.cached_bytes == 256

    def test_second_release_raises(self) -> None:
        """Wrapped handles have no allocator but still track release."""
        handle = TensorHandle.wrap(torch.zeros(3, dtype=torch.int32))
        handle.release()
        with pytest.raises(ValueError, match="already released"):
            handle.release()
