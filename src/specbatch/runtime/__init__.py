"""Runtime subpackage: tensor handles, streams, and buffer management."""

from specbatch.runtime.buffer_manager import BufferManager
from specbatch.runtime.lamport import lamport_initialize, lamport_initialize_all
from specbatch.runtime.stream import CudaStream, StreamEvent
from specbatch.runtime.tensor import MemoryKind, TensorHandle, allocate_region

__all__ = [
    "BufferManager",
    "CudaStream",
    "MemoryKind",
    "StreamEvent",
    "TensorHandle",
    "allocate_region",
    "lamport_initialize",
    "lamport_initialize_all",
]
