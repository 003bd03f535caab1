"""Decoding subpackage: modes, per-sequence state, and batched speculative buffers."""

from specbatch.decoding.arena import SlotArena
from specbatch.decoding.buffers import PackedStep, SpeculativeDecodingBuffers, StepResult
from specbatch.decoding.masks import linear_visibility, num_mask_words, pack_mask, unpack_mask
from specbatch.decoding.mode import ModeBits, SpeculativeDecodingMode
from specbatch.decoding.state import DecodingState, SlotState
from specbatch.decoding.tree import DraftTree
from specbatch.decoding.verify import Acceptance, build_step_result, greedy_accept

__all__ = [
    "Acceptance",
    "DecodingState",
    "DraftTree",
    "ModeBits",
    "PackedStep",
    "SlotArena",
    "SlotState",
    "SpeculativeDecodingBuffers",
    "SpeculativeDecodingMode",
    "StepResult",
    "build_step_result",
    "greedy_accept",
    "linear_visibility",
    "num_mask_words",
    "pack_mask",
    "unpack_mask",
]
