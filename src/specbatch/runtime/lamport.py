"""Lamport-style buffer initialization for cross-device handshakes."""

from __future__ import annotations

import torch

from specbatch.runtime.tensor import TensorHandle

# Readers spin until a slot no longer holds the negative-zero sentinel.
LAMPORT_SENTINEL = -0.0


def lamport_initialize(handle: TensorHandle, size: int | None = None) -> None:
    """Fill the first ``size`` bytes of ``handle`` with the float32 sentinel.

    Args:
        handle: Buffer to initialize.
        size: Number of bytes to fill.  Defaults to the handle's valid bytes.
    """
    nbytes = handle.nbytes if size is None else size
    if nbytes > handle.nbytes:
        raise ValueError(f"size {nbytes} exceeds buffer of {handle.nbytes} bytes")
    if nbytes % 4:
        raise ValueError(f"size must be a multiple of 4 bytes, got {nbytes}")
    raw = handle.data.reshape(-1).view(torch.uint8)[:nbytes]
    raw.view(torch.float32).fill_(LAMPORT_SENTINEL)


def lamport_initialize_all(
    buffer_0: TensorHandle,
    buffer_1: TensorHandle,
    buffer_2: TensorHandle,
    size: int | None = None,
) -> None:
    """Initialize the three rotating handshake buffers."""
    for handle in (buffer_0, buffer_1, buffer_2):
        lamport_initialize(handle, size)
