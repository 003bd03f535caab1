"""Visibility masks and their bit-packed form.

Row ``i`` of a mask says which draft tokens token ``i`` may attend to.
Packed masks store column ``j`` as bit ``j % 32`` of int32 word ``j // 32``.
"""

from __future__ import annotations

import torch
from torch import Tensor

_BITS = 32


def num_mask_words(num_cols: int) -> int:
    """Int32 words needed to hold ``num_cols`` bits."""
    return (num_cols + _BITS - 1) // _BITS


def linear_visibility(num_tokens: int) -> Tensor:
    """Causal mask for a linear draft: token ``i`` sees tokens ``0..i``."""
    return torch.ones(num_tokens, num_tokens, dtype=torch.bool).tril()


def pack_mask(mask: Tensor) -> Tensor:
    """Pack a boolean mask ``[..., rows, cols]`` into ``[..., rows, words]`` int32.

    CUDA tensors use the Triton kernel; host tensors use the torch reference.
    """
    if mask.is_cuda:
        from specbatch.kernels.packed_mask import triton_pack_mask

        return triton_pack_mask(mask)
    return pack_mask_reference(mask)


def pack_mask_reference(mask: Tensor) -> Tensor:
    """Torch reference for ``pack_mask``."""
    *lead, rows, cols = mask.shape
    words = num_mask_words(cols)
    padded = torch.zeros(*lead, rows, words * _BITS, dtype=torch.int64, device=mask.device)
    padded[..., :cols] = mask.to(torch.int64)
    weights = torch.ones(_BITS, dtype=torch.int64, device=mask.device) << torch.arange(
        _BITS, dtype=torch.int64, device=mask.device
    )
    packed = (padded.view(*lead, rows, words, _BITS) * weights).sum(-1)
    # Reinterpret the unsigned 32-bit value as two's-complement int32.
    packed = torch.where(packed >= 1 << 31, packed - (1 << 32), packed)
    return packed.to(torch.int32)


def unpack_mask(packed: Tensor, num_cols: int) -> Tensor:
    """Inverse of ``pack_mask``: ``[..., rows, words]`` int32 -> ``[..., rows, num_cols]`` bool."""
    shifts = torch.arange(_BITS, dtype=torch.int64, device=packed.device)
    bits = (packed.to(torch.int64).unsqueeze(-1) >> shifts) & 1
    bits = bits.flatten(-2)
    return bits[..., :num_cols].bool()
