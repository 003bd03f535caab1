"""Error taxonomy for speculative buffer management."""

from __future__ import annotations


class SpecBatchError(Exception):
    """Base class for all errors raised by ``specbatch``."""


class ConfigurationError(SpecBatchError, ValueError):
    """Shape or size mismatch against declared maxima.

    Fatal: indicates a setup bug and is never retried.
    """


class ShapeError(SpecBatchError, ValueError):
    """Reshape whose element count does not match the logical size."""


class AllocationError(SpecBatchError, MemoryError):
    """Allocator could not satisfy a request.

    Surfaced to the caller, who may retry after trimming pool memory.
    """


class OutOfMemoryError(AllocationError):
    """Quota or device memory exhausted."""


class ValidationInvariantViolation(SpecBatchError, RuntimeError):
    """Accepted count disagrees with what was packed for a slot.

    Fatal for the whole batch: packing and validation disagree about topology.
    """
