"""Tensor handles: typed, resizable views over raw memory regions.

A single ``TensorHandle`` type covers host, device, pinned and unified
memory.  The memory kind is a discriminant; kind-specific allocation is
looked up in ``_ALLOCATORS`` rather than dispatched through subclasses.

Each handle owns one raw region (a flat ``uint8`` tensor).  The logical size
may shrink and grow freely within the region's capacity; growth past the
capacity acquires a new region from the handle's allocator.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Protocol

import torch
from torch import Tensor

from specbatch.errors import OutOfMemoryError, ShapeError

logger = logging.getLogger(__name__)


class MemoryKind(Enum):
    """Where a tensor's memory lives."""

    HOST = "host"
    DEVICE = "device"
    PINNED = "pinned"
    UNIFIED = "unified"


_MEMORY_TYPE_NAMES = {
    MemoryKind.HOST: "CPU",
    MemoryKind.DEVICE: "GPU",
    MemoryKind.PINNED: "PINNED",
    MemoryKind.UNIFIED: "UVM",
}


# ---------------------------------------------------------------------------
# Kind-specific allocation strategies
# ---------------------------------------------------------------------------


def _alloc_host(nbytes: int, device: torch.device) -> Tensor:
    return torch.empty(nbytes, dtype=torch.uint8, device="cpu")


def _alloc_pinned(nbytes: int, device: torch.device) -> Tensor:
    # Page-locking needs a CUDA context; plain host memory otherwise.
    return torch.empty(nbytes, dtype=torch.uint8, pin_memory=torch.cuda.is_available())


def _alloc_device(nbytes: int, device: torch.device) -> Tensor:
    return torch.empty(nbytes, dtype=torch.uint8, device=device)


def _alloc_unified(nbytes: int, device: torch.device) -> Tensor:
    # torch has no managed-memory allocator; unified regions live on the
    # stream's device, which is host memory for host streams.
    return torch.empty(nbytes, dtype=torch.uint8, device=device)


_ALLOCATORS: dict[MemoryKind, Callable[[int, torch.device], Tensor]] = {
    MemoryKind.HOST: _alloc_host,
    MemoryKind.PINNED: _alloc_pinned,
    MemoryKind.DEVICE: _alloc_device,
    MemoryKind.UNIFIED: _alloc_unified,
}


def allocate_region(kind: MemoryKind, nbytes: int, device: str | torch.device) -> Tensor:
    """Allocate a raw ``uint8`` region of ``nbytes`` for the given memory kind.

    Raises:
        OutOfMemoryError: If the underlying allocator is exhausted.
    """
    try:
        return _ALLOCATORS[kind](nbytes, torch.device(device))
    except torch.cuda.OutOfMemoryError as exc:
        logger.warning("Allocation of %d bytes (%s) failed: out of memory", nbytes, kind.value)
        raise OutOfMemoryError(
            f"Cannot allocate {nbytes} bytes of {kind.value} memory on {device}"
        ) from exc


def memory_kind_of(tensor: Tensor) -> MemoryKind:
    """Infer the memory kind of an existing torch tensor."""
    if tensor.is_cuda:
        return MemoryKind.DEVICE
    if tensor.is_pinned():
        return MemoryKind.PINNED
    return MemoryKind.HOST


def volume(shape: Sequence[int]) -> int:
    """Number of elements implied by ``shape``."""
    return math.prod(shape)


class RegionAllocator(Protocol):
    """Source of raw regions for growing tensor handles."""

    def acquire_region(self, kind: MemoryKind, nbytes: int) -> Tensor: ...

    def reclaim_region(self, kind: MemoryKind, region: Tensor) -> None: ...


class TensorHandle:
    """Shape/dtype-typed view over a contiguous memory region.

    Attributes:
        memory_kind: Where the region lives.
    """

    def __init__(
        self,
        region: Tensor,
        shape: Sequence[int],
        dtype: torch.dtype,
        memory_kind: MemoryKind,
        allocator: RegionAllocator | None = None,
    ) -> None:
        shape = tuple(int(d) for d in shape)
        if any(d < 0 for d in shape):
            raise ShapeError(f"Negative dimension in shape {shape}")
        if region.dtype != torch.uint8 or region.dim() != 1:
            raise ValueError("region must be a flat uint8 tensor")
        size = volume(shape)
        if size * dtype.itemsize > region.numel():
            raise ValueError(
                f"Shape {shape} ({size * dtype.itemsize} bytes) exceeds region of "
                f"{region.numel()} bytes"
            )
        self.memory_kind = memory_kind
        self._region = region
        self._shape = shape
        self._dtype = dtype
        self._size = size
        self._allocator = allocator
        self._released = False

    @staticmethod
    def wrap(tensor: Tensor) -> TensorHandle:
        """Adopt an existing contiguous tensor without copying."""
        if not tensor.is_contiguous():
            raise ValueError("Only contiguous tensors can be wrapped")
        region = tensor.reshape(-1).view(torch.uint8)
        return TensorHandle(region, tuple(tensor.shape), tensor.dtype, memory_kind_of(tensor))

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def dtype(self) -> torch.dtype:
        return self._dtype

    @property
    def size(self) -> int:
        """Logical number of elements."""
        return self._size

    @property
    def capacity(self) -> int:
        """Number of elements the current region can hold without reallocating."""
        return self._region.numel() // self._dtype.itemsize

    @property
    def nbytes(self) -> int:
        return self._size * self._dtype.itemsize

    @property
    def byte_capacity(self) -> int:
        return self._region.numel()

    @property
    def device(self) -> torch.device:
        return self._region.device

    @property
    def memory_type_name(self) -> str:
        return _MEMORY_TYPE_NAMES[self.memory_kind]

    @property
    def data_ptr(self) -> int:
        """Raw address of the region."""
        return self._region.data_ptr()

    @property
    def data(self) -> Tensor:
        """Mutable torch view of the valid elements, shaped ``shape``."""
        flat = self._region[: self.nbytes].view(self._dtype)
        return flat.view(self._shape)

    def to_host(self) -> Tensor:
        """Immutable snapshot: a detached host copy of the valid elements."""
        return self.data.detach().to("cpu", copy=True)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def resize(self, new_size: int) -> None:
        """Change the logical size; the shape becomes ``(new_size,)``.

        Never reallocates when ``new_size <= capacity``.  Growth copies the
        valid prefix into a new region.

        Raises:
            ShapeError: If ``new_size`` is negative.
            AllocationError: If a larger region cannot be allocated.  The
                handle and its data are left untouched.
        """
        if new_size < 0:
            raise ShapeError(f"Cannot resize to negative size {new_size}")
        if new_size > self.capacity:
            region = self._acquire(new_size * self._dtype.itemsize)
            keep = self.nbytes
            if keep:
                region[:keep].copy_(self._region[:keep])
            self._reclaim(self._region)
            self._region = region
        self._size = new_size
        self._shape = (new_size,)

    def reshape(self, dims: Sequence[int]) -> None:
        """Change the shape without changing the number of elements.

        Raises:
            ShapeError: If ``dims`` implies a different element count.
        """
        dims = tuple(int(d) for d in dims)
        if any(d < 0 for d in dims):
            raise ShapeError(f"Negative dimension in shape {dims}")
        if volume(dims) != self._size:
            raise ShapeError(
                f"Cannot reshape {self._shape} ({self._size} elements) to {dims} "
                f"({volume(dims)} elements)"
            )
        self._shape = dims

    def release(self) -> None:
        """Return the region to its allocator.  Size and capacity drop to 0.

        Raises:
            ValueError: If the handle was already released.
        """
        if self._released:
            raise ValueError(f"Handle already released (double-free): {self!r}")
        self._released = True
        self._reclaim(self._region)
        self._region = torch.empty(0, dtype=torch.uint8, device=self._region.device)
        self._size = 0
        self._shape = (0,)

    def _acquire(self, nbytes: int) -> Tensor:
        if self._allocator is not None:
            return self._allocator.acquire_region(self.memory_kind, nbytes)
        return allocate_region(self.memory_kind, nbytes, self._region.device)

    def _reclaim(self, region: Tensor) -> None:
        if self._allocator is not None and region.numel() > 0:
            self._allocator.reclaim_region(self.memory_kind, region)

    def __repr__(self) -> str:
        return (
            f"TensorHandle(shape={self._shape}, dtype={self._dtype}, "
            f"memory={self.memory_type_name}, capacity={self.capacity})"
        )
