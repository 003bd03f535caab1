"""Unit tests for visibility masks and the packed-mask reference."""

from __future__ import annotations

import torch

from specbatch.decoding.masks import (
    linear_visibility,
    num_mask_words,
    pack_mask,
    pack_mask_reference,
    unpack_mask,
)
from specbatch.decoding.tree import DraftTree


class TestNumMaskWords:
    def test_word_counts(self) -> None:
        assert num_mask_words(0) == 0
        assert num_mask_words(1) == 1
        assert num_mask_words(32) == 1
        assert num_mask_words(33) == 2
        assert num_mask_words(64) == 2


class TestPackMask:
    def test_linear_mask(self) -> None:
        """Token i sees tokens 0..i: row value is 2**(i+1) - 1."""
        packed = pack_mask(linear_visibility(4))
        assert packed.dtype == torch.int32
        assert packed.shape == (4, 1)
        assert packed[:, 0].tolist() == [1, 3, 7, 15]

    def test_three_node_tree(self) -> None:
        packed = pack_mask(DraftTree([-1, 0, 0]).visibility())
        assert packed[:, 0].tolist() == [0b001, 0b011, 0b101]

    def test_seven_node_tree(self) -> None:
        packed = pack_mask(DraftTree([-1, 0, 0, 1, 1, 2, 2]).visibility())
        assert packed[:, 0].tolist() == [
            0b0000001,
            0b0000011,
            0b0000101,
            0b0001011,
            0b0010011,
            0b0100101,
            0b1000101,
        ]

    def test_bit_31_is_sign_bit(self) -> None:
        """Column 31 lands in the sign bit; column 32 starts the next word."""
        packed = pack_mask(linear_visibility(33))
        assert packed.shape == (33, 2)
        assert packed[30].tolist() == [2**31 - 1, 0]
        assert packed[31].tolist() == [-1, 0]
        assert packed[32].tolist() == [-1, 1]

    def test_batched_leading_dims(self) -> None:
        masks = torch.stack([linear_visibility(3), DraftTree([-1, 0, 0]).visibility()])
        packed = pack_mask(masks)
        assert packed.shape == (2, 3, 1)
        assert packed[0, :, 0].tolist() == [1, 3, 7]
        assert packed[1, :, 0].tolist() == [1, 3, 5]

    def test_empty_mask(self) -> None:
        packed = pack_mask_reference(torch.zeros(2, 0, 0, dtype=torch.bool))
        assert packed.shape == (2, 0, 0)


class TestUnpackMask:
    def test_inverse_of_pack(self) -> None:
        torch.manual_seed(0)
        mask = torch.rand(3, 40, 40) > 0.5
        assert torch.equal(unpack_mask(pack_mask(mask), 40), mask)
