"""Unit tests for Lamport sentinel initialization."""

from __future__ import annotations

import pytest
import torch

from specbatch.runtime.buffer_manager import BufferManager
from specbatch.runtime.lamport import lamport_initialize, lamport_initialize_all
from specbatch.runtime.stream import CudaStream

_NEG_ZERO_BITS = -(2**31)  # 0x80000000 as int32


def _manager() -> BufferManager:
    return BufferManager(CudaStream("cpu"))


class TestLamportInitialize:
    def test_fills_negative_zero(self) -> None:
        h = _manager().cpu((8,), torch.float32)
        h.data.fill_(1.0)
        lamport_initialize(h)
        assert h.data.eq(0).all()
        assert torch.signbit(h.data).all()

    def test_partial_size(self) -> None:
        h = _manager().cpu((8,), torch.int32)
        lamport_initialize(h, size=16)
        assert h.data[:4].tolist() == [_NEG_ZERO_BITS] * 4
        # Untouched tail keeps whatever it held; only check it was not written.
        h2 = _manager().cpu((8,), torch.int32)
        h2.data.fill_(7)
        lamport_initialize(h2, size=16)
        assert h2.data[4:].tolist() == [7] * 4

    def test_size_must_be_multiple_of_four(self) -> None:
        h = _manager().cpu((8,), torch.float32)
        with pytest.raises(ValueError, match="multiple of 4"):
            lamport_initialize(h, size=6)

    def test_size_beyond_buffer(self) -> None:
        h = _manager().cpu((2,), torch.float32)
        with pytest.raises(ValueError, match="exceeds"):
            lamport_initialize(h, size=64)


class TestLamportInitializeAll:
    def test_all_three_buffers(self) -> None:
        mgr = _manager()
        bufs = [mgr.cpu((4,), torch.float32) for _ in range(3)]
        for b in bufs:
            b.data.fill_(2.0)
        lamport_initialize_all(*bufs)
        for b in bufs:
            assert torch.signbit(b.data).all()
            assert b.data.eq(0).all()
