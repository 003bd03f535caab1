"""Execution streams and completion handles.

Work submitted to a stream runs in submission order without blocking the
caller.  The only blocking points are explicit: ``StreamEvent.wait()`` and
``CudaStream.synchronize()``.

On host devices there is no asynchronous queue: work completes on
submission and every event is already done.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator

import torch


class StreamEvent:
    """Completion handle for work recorded on a stream.

    Attributes:
        device: Device the recorded work runs on.
    """

    def __init__(self, device: torch.device, event: torch.cuda.Event | None = None) -> None:
        self.device = device
        self._event = event

    def wait(self) -> None:
        """Block the host until the recorded work has finished."""
        if self._event is not None:
            self._event.synchronize()

    def query(self) -> bool:
        """Return True if the recorded work has finished (non-blocking)."""
        if self._event is None:
            return True
        return bool(self._event.query())

    def __repr__(self) -> str:
        return f"StreamEvent(device={self.device}, done={self.query()})"


class CudaStream:
    """One execution queue bound to exactly one device.

    Args:
        device: Device for the stream.  ``"cpu"`` gives a synchronous host queue.
        stream_ptr: Raw ``cudaStream_t`` address of an existing stream to adopt
            instead of creating a new one.
    """

    def __init__(
        self,
        device: str | torch.device = "cuda",
        stream_ptr: int | None = None,
    ) -> None:
        self.device = torch.device(device)
        self._stream: torch.cuda.Stream | None = None
        if self.device.type == "cuda":
            if self.device.index is None:
                self.device = torch.device("cuda", torch.cuda.current_device())
            if stream_ptr is not None:
                self._stream = torch.cuda.ExternalStream(stream_ptr, device=self.device)
            else:
                self._stream = torch.cuda.Stream(device=self.device)
        elif stream_ptr is not None:
            raise ValueError(f"stream_ptr given for non-CUDA device {self.device}")

    @property
    def is_cuda(self) -> bool:
        return self._stream is not None

    @property
    def stream_ptr(self) -> int:
        """Raw stream handle (0 for host queues)."""
        if self._stream is None:
            return 0
        return int(self._stream.cuda_stream)

    def get_device(self) -> int:
        """Device ordinal this stream is bound to (-1 for host)."""
        if self.device.type != "cuda":
            return -1
        assert self.device.index is not None
        return self.device.index

    def record(self) -> StreamEvent:
        """Record an event after all work submitted so far."""
        if self._stream is None:
            return StreamEvent(self.device)
        event = torch.cuda.Event()
        event.record(self._stream)
        return StreamEvent(self.device, event)

    def wait_event(self, event: StreamEvent) -> None:
        """Make future work on this stream wait for ``event`` (device-side)."""
        if self._stream is not None and event._event is not None:
            self._stream.wait_event(event._event)

    def synchronize(self) -> None:
        """Block until all submitted work has finished."""
        if self._stream is not None:
            self._stream.synchronize()

    @contextlib.contextmanager
    def use(self) -> Iterator[CudaStream]:
        """Make this the current stream for torch operations inside the block."""
        if self._stream is None:
            yield self
            return
        with torch.cuda.stream(self._stream):
            yield self

    def __repr__(self) -> str:
        return f"CudaStream(device={self.device}, stream_ptr={self.stream_ptr:#x})"
