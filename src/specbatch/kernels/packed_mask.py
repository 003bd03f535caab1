"""Packed attention-mask Triton kernel.

Compresses a boolean visibility mask ``[..., rows, cols]`` into int32 bit
fields ``[..., rows, ceil(cols / 32)]``: column ``j`` maps to bit ``j % 32``
of word ``j // 32``.  Replaces a cast/shift/sum chain of kernel launches
with one launch over ``(rows, words)``.
"""

from __future__ import annotations

import torch
import triton
import triton.language as tl
from torch import Tensor


@triton.jit
def _pack_mask_kernel(
    M,
    OUT,
    stride_m_row,
    stride_out_row,
    num_cols,
):
    """Each program packs one 32-column word of one mask row."""
    row_idx = tl.program_id(0)
    word_idx = tl.program_id(1)

    shifts = tl.arange(0, 32)
    cols = word_idx * 32 + shifts
    valid = cols < num_cols
    bits = tl.load(M + row_idx * stride_m_row + cols, mask=valid, other=0).to(tl.int32)

    # Bits are disjoint, so the wrapping int32 sum equals their bitwise OR.
    packed = tl.sum(bits << shifts, axis=0)
    tl.store(OUT + row_idx * stride_out_row + word_idx, packed)


def triton_pack_mask(mask: Tensor) -> Tensor:
    """Pack a boolean mask into int32 words using Triton.

    Args:
        mask: Boolean CUDA tensor of shape ``[..., rows, cols]``.

    Returns:
        Int32 tensor of shape ``[..., rows, ceil(cols / 32)]``.
    """
    *lead, rows, cols = mask.shape
    words = (cols + 31) // 32
    m2 = mask.reshape(-1, cols).to(torch.int8).contiguous()
    num_rows = m2.shape[0]

    out = torch.zeros(num_rows, words, dtype=torch.int32, device=mask.device)
    if num_rows and words:
        _pack_mask_kernel[(num_rows, words)](
            m2,
            out,
            m2.stride(0),
            out.stride(0),
            cols,
        )
    return out.reshape(*lead, rows, words)
