"""Triton packed-mask kernel and device-side buffers.

The kernel is compared against the torch reference.  Requires CUDA.
"""

from __future__ import annotations

import pytest
import torch

from specbatch.decoding.buffers import SpeculativeDecodingBuffers, StepResult
from specbatch.decoding.masks import linear_visibility, pack_mask_reference
from specbatch.decoding.mode import SpeculativeDecodingMode
from specbatch.decoding.state import DecodingState
from specbatch.decoding.tree import DraftTree
from specbatch.runtime.buffer_manager import BufferManager
from specbatch.runtime.stream import CudaStream
from specbatch.runtime.tensor import MemoryKind


class TestTritonPackMask:
    @pytest.mark.parametrize("cols", [1, 5, 31, 32, 33, 64, 100])
    def test_matches_reference(self, device: str, cols: int) -> None:
        from specbatch.kernels.packed_mask import triton_pack_mask

        torch.manual_seed(cols)
        mask = torch.rand(4, 7, cols) > 0.5
        expected = pack_mask_reference(mask)
        actual = triton_pack_mask(mask.to(device))
        assert actual.dtype == torch.int32
        torch.testing.assert_close(actual.cpu(), expected)

    def test_sign_bit(self, device: str) -> None:
        from specbatch.kernels.packed_mask import triton_pack_mask

        packed = triton_pack_mask(linear_visibility(33).to(device)).cpu()
        assert packed[31].tolist() == [-1, 0]
        assert packed[32].tolist() == [-1, 1]

    def test_tree_fixture(self, device: str) -> None:
        from specbatch.kernels.packed_mask import triton_pack_mask

        vis = DraftTree([-1, 0, 0, 1, 1, 2, 2]).visibility().to(device)
        packed = triton_pack_mask(vis).cpu()
        assert packed[:, 0].tolist() == [1, 3, 5, 11, 19, 37, 69]


class TestDeviceBuffers:
    def test_pack_unpack_on_device(self, device: str) -> None:
        manager = BufferManager(CudaStream(device))
        buf = SpeculativeDecodingBuffers(
            2, 3, manager, SpeculativeDecodingMode.medusa(), tree=DraftTree([-1, 0, 0])
        )
        assert buf.generation_lengths.memory_kind is MemoryKind.DEVICE
        assert buf.generation_lengths.device.type == "cuda"
        for _ in range(2):
            buf.add_sequence(DecodingState.from_prompt([1, 2, 3, 4]))
        buf.propose(0, [5, 6, 7])
        buf.propose(1, [8, 9, 10])

        step = buf.pack()
        step.event.wait()
        assert buf.generation_lengths.to_host().tolist() == [3, 3]
        assert buf.packed_masks is not None
        assert buf.packed_masks.to_host()[:, :, 0].tolist() == [[1, 3, 5], [1, 3, 5]]

        result = StepResult(
            accepted_lengths=torch.tensor([2, 0], dtype=torch.int32, device=device),
            accepted_tokens=torch.tensor([[5, 6, 0], [11, 0, 0]], dtype=torch.int32),
        )
        committed = buf.unpack(step, result)
        assert committed == {0: [5, 6], 1: [11]}
        manager.stream.synchronize()
        assert buf.rewind_lengths is not None
        assert buf.rewind_lengths.to_host().tolist() == [1, 3]
        assert buf.sequence_lengths.to_host().tolist() == [6, 5]
