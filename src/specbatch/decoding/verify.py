"""Greedy acceptance of draft tokens against target-model predictions."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import torch
from torch import Tensor

from specbatch.decoding.buffers import SpeculativeDecodingBuffers, StepResult
from specbatch.decoding.state import SlotState
from specbatch.decoding.tree import DraftTree
from specbatch.errors import ConfigurationError


@dataclass
class Acceptance:
    """Outcome of verifying one sequence's draft.

    Attributes:
        num_accepted: Number of draft tokens on the accepted path.
        tokens: Tokens to commit: the accepted path, or the corrected
            token when nothing was accepted.
        path: Draft node ids on the accepted path, shallowest first.
    """

    num_accepted: int
    tokens: list[int]
    path: list[int] = field(default_factory=list)


def greedy_accept(
    tree: DraftTree,
    draft_tokens: Sequence[int],
    target_tokens: Sequence[int] | Tensor,
) -> Acceptance:
    """Accept the longest draft path the target model agrees with.

    Node ``j`` is accepted when its draft token equals ``target_tokens[j]``
    and its parent is accepted.  Among accepted nodes the deepest wins; ties
    go to the lowest node index.

    Args:
        tree: Topology of the draft.
        draft_tokens: One token per tree node.
        target_tokens: Target-model prediction per node.  Entry 0 doubles as
            the corrected token when no draft is accepted.
    """
    if isinstance(target_tokens, Tensor):
        target_tokens = target_tokens.reshape(-1).tolist()
    n = tree.num_nodes
    if len(draft_tokens) != n:
        raise ConfigurationError(f"Expected {n} draft tokens, got {len(draft_tokens)}")
    if len(target_tokens) < max(n, 1):
        raise ConfigurationError(
            f"Expected at least {max(n, 1)} target tokens, got {len(target_tokens)}"
        )

    accepted = [False] * n
    best = -1
    for j, parent in enumerate(tree.parents):
        if parent >= 0 and not accepted[parent]:
            continue
        if int(draft_tokens[j]) != int(target_tokens[j]):
            continue
        accepted[j] = True
        if best < 0 or tree.depths[j] > tree.depths[best]:
            best = j

    if best < 0:
        return Acceptance(num_accepted=0, tokens=[int(target_tokens[0])])
    path = tree.ancestors(best)
    return Acceptance(
        num_accepted=len(path),
        tokens=[int(draft_tokens[j]) for j in path],
        path=path,
    )


def build_step_result(
    buffers: SpeculativeDecodingBuffers,
    target_tokens: Tensor,
) -> StepResult:
    """Run ``greedy_accept`` for every proposed slot.

    Args:
        buffers: Buffers whose proposed slots are being verified.
        target_tokens: ``[max_num_sequences, width]`` target predictions per
            slot and draft node.
    """
    n = buffers.max_num_sequences
    width = max(buffers.max_tokens_per_step, 1)
    target = target_tokens.to("cpu")
    if target.dim() != 2 or target.shape[0] != n or target.shape[1] < width:
        raise ConfigurationError(
            f"target_tokens shape {tuple(target.shape)} must be ({n}, >= {width})"
        )

    accepted_lengths = torch.zeros(n, dtype=torch.int32)
    accepted_tokens = torch.zeros(n, width, dtype=torch.int32)
    best_paths: dict[int, list[int]] = {}
    for slot in buffers.arena.slots_in(SlotState.PROPOSED):
        state = buffers.arena[slot]
        acceptance = greedy_accept(buffers.tree_for(state), state.draft_tokens, target[slot])
        accepted_lengths[slot] = acceptance.num_accepted
        accepted_tokens[slot, : len(acceptance.tokens)] = torch.tensor(
            acceptance.tokens, dtype=torch.int32
        )
        best_paths[slot] = acceptance.path
    return StepResult(
        accepted_lengths=accepted_lengths,
        accepted_tokens=accepted_tokens,
        best_paths=best_paths,
    )
