"""Per-sequence speculative decoding state."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import torch
from torch import Tensor

from specbatch.decoding.tree import DraftTree


class SlotState(Enum):
    """Lifecycle of one sequence across decoding steps.

    Transitions::

        EMPTY ──> PROPOSED ──> VALIDATED ──> COMMITTED ──> PROPOSED ...
                                                 │
                                                 └──> COMPLETE

    Any state may move to EVICTED when the scheduler drops the sequence.
    """

    EMPTY = "empty"
    PROPOSED = "proposed"
    VALIDATED = "validated"
    COMMITTED = "committed"
    COMPLETE = "complete"
    EVICTED = "evicted"


@dataclass
class DecodingState:
    """Speculative-decoding bookkeeping for one sequence between steps.

    Created when a sequence enters the batch.  Each step the model proposes
    draft tokens (``propose``), the acceptance routine decides how many of
    them survive (``validate``), and the surviving tokens are appended
    (``commit``).

    Attributes:
        ids: Prompt ids followed by every committed token.
        input_len: Number of prompt tokens at the front of ``ids``.
        max_new_tokens: Generation budget; ``None`` means unbounded.
        end_id: Token that completes the sequence when committed.
        stop_words: Token sequences that complete the sequence when they
            appear at the end of the generated tokens.
        temperature: Sampling temperature (explicit-draft-token mode input).
        generator: Per-sequence RNG for random validation data.
    """

    ids: list[int]
    input_len: int
    max_new_tokens: int | None = None
    end_id: int | None = None
    stop_words: list[list[int]] = field(default_factory=list)
    temperature: float = 1.0
    generator: torch.Generator | None = field(default=None, repr=False)

    # Mutable state
    state: SlotState = SlotState.EMPTY
    slot: int | None = None
    finish_reason: str | None = None
    draft_tokens: list[int] = field(default_factory=list)
    draft_logits: Tensor | None = field(default=None, repr=False)
    draft_probs: Tensor | None = field(default=None, repr=False)
    draft_tree: DraftTree | None = None
    num_accepted: int | None = None

    # Tokens committed at each step.
    generated_tokens_per_step: list[int] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.ids = [int(t) for t in self.ids]
        if not 0 <= self.input_len <= len(self.ids):
            raise ValueError(
                f"input_len must be in [0, {len(self.ids)}], got {self.input_len}"
            )
        if self.max_new_tokens is not None and self.max_new_tokens < 1:
            raise ValueError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")

    @staticmethod
    def from_prompt(
        prompt_ids: Sequence[int],
        *,
        max_new_tokens: int | None = None,
        end_id: int | None = None,
    ) -> DecodingState:
        return DecodingState(
            ids=list(prompt_ids),
            input_len=len(prompt_ids),
            max_new_tokens=max_new_tokens,
            end_id=end_id,
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def sequence_length(self) -> int:
        return len(self.ids)

    @property
    def num_generated(self) -> int:
        return len(self.ids) - self.input_len

    @property
    def generated_ids(self) -> list[int]:
        return self.ids[self.input_len :]

    @property
    def is_complete(self) -> bool:
        return self.state is SlotState.COMPLETE

    @property
    def num_draft_tokens(self) -> int:
        return len(self.draft_tokens)

    @property
    def mean_tokens_per_step(self) -> float:
        if not self.generated_tokens_per_step:
            return 0.0
        return sum(self.generated_tokens_per_step) / len(self.generated_tokens_per_step)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _expect(self, *allowed: SlotState) -> None:
        if self.state not in allowed:
            raise RuntimeError(
                f"Invalid transition from {self.state.value}: expected one of "
                f"{[s.value for s in allowed]}"
            )

    def propose(
        self,
        draft_tokens: Sequence[int] | Tensor,
        *,
        draft_logits: Tensor | None = None,
        draft_probs: Tensor | None = None,
        tree: DraftTree | None = None,
    ) -> None:
        """Record the draft tokens proposed for the next step.

        Shape checks against the batch maxima happen at pack time.
        """
        self._expect(SlotState.EMPTY, SlotState.COMMITTED)
        if isinstance(draft_tokens, Tensor):
            draft_tokens = draft_tokens.reshape(-1).tolist()
        self.draft_tokens = [int(t) for t in draft_tokens]
        self.draft_logits = draft_logits
        self.draft_probs = draft_probs
        self.draft_tree = tree
        self.num_accepted = None
        self.state = SlotState.PROPOSED

    def validate(self, num_accepted: int) -> None:
        """Record how many leading draft tokens the acceptance routine kept."""
        self._expect(SlotState.PROPOSED)
        self.num_accepted = num_accepted
        self.state = SlotState.VALIDATED

    def commit(self, tokens: Sequence[int] | Tensor) -> list[int]:
        """Append validated tokens and check completion.

        Commits at least one token: a step with zero accepted drafts still
        carries the corrected token from the real model.  The committed run
        stops early at ``end_id`` (kept), at the ``max_new_tokens`` budget,
        and at the first completed stop word.

        Returns:
            The tokens actually appended.
        """
        self._expect(SlotState.VALIDATED)
        if isinstance(tokens, Tensor):
            tokens = tokens.reshape(-1).tolist()
        tokens = [int(t) for t in tokens]
        if not tokens:
            raise ValueError("commit requires at least one token")

        committed: list[int] = []
        reason: str | None = None
        for token in tokens:
            if self.max_new_tokens is not None and self.num_generated >= self.max_new_tokens:
                reason = "length"
                break
            self.ids.append(token)
            committed.append(token)
            if self.end_id is not None and token == self.end_id:
                reason = "end_id"
                break
            if self._hit_stop_word():
                reason = "stop"
                break
        if reason is None and self.max_new_tokens is not None:
            if self.num_generated >= self.max_new_tokens:
                reason = "length"

        self.generated_tokens_per_step.append(len(committed))
        self.draft_tokens = []
        self.draft_logits = None
        self.draft_probs = None
        if reason is not None:
            self.finish_reason = reason
            self.state = SlotState.COMPLETE
        else:
            self.state = SlotState.COMMITTED
        return committed

    def abort(self) -> None:
        """Drop the current proposal without committing anything.

        The sequence returns to the state it was in before ``propose``.
        """
        self._expect(SlotState.PROPOSED)
        self.draft_tokens = []
        self.draft_logits = None
        self.draft_probs = None
        self.draft_tree = None
        self.num_accepted = None
        self.state = SlotState.COMMITTED if self.generated_tokens_per_step else SlotState.EMPTY

    def evict(self) -> None:
        self.state = SlotState.EVICTED
        self.slot = None

    def _hit_stop_word(self) -> bool:
        generated = self.generated_ids
        for word in self.stop_words:
            if word and len(generated) >= len(word) and generated[-len(word) :] == list(word):
                return True
        return False
