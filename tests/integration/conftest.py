"""Shared fixtures for device-side tests."""

from __future__ import annotations

import pytest
import torch


@pytest.fixture()
def device() -> str:
    """Return 'cuda'; the packed-mask kernel and device streams need a GPU."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA required for Triton kernel and device stream tests")
    return "cuda"
