"""Batched speculative buffers: pack per-slot drafts, unpack acceptance results.

All tensors are allocated once for the worst case (``max_num_sequences`` x
``max_tokens_per_step``) and never reallocated during a step.  Every per-slot
dimension spans all slots; free or evicted slots are inert and hold zeros.

A step is::

    step = buffers.pack()            # host staging -> device, async
    ... execution engine runs, validation produces a StepResult ...
    committed = buffers.unpack(step, result)

Packing writes disjoint per-slot regions of host staging tensors and then
issues one copy per tensor on the manager's stream.  The returned
``PackedStep`` carries the completion event that readers must wait on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import torch
from torch import Tensor

from specbatch.decoding.arena import SlotArena
from specbatch.decoding.masks import num_mask_words, pack_mask
from specbatch.decoding.mode import SpeculativeDecodingMode
from specbatch.decoding.state import DecodingState, SlotState
from specbatch.decoding.tree import DraftTree
from specbatch.errors import ConfigurationError, ValidationInvariantViolation
from specbatch.runtime.buffer_manager import BufferManager
from specbatch.runtime.stream import CudaStream, StreamEvent
from specbatch.runtime.tensor import TensorHandle

if TYPE_CHECKING:
    from specbatch.config import DecodingConfig

logger = logging.getLogger(__name__)


@dataclass
class PackedStep:
    """Host-side record of one packed step.

    Attributes:
        step: Monotonic step counter.
        states: Slot -> state that was packed into that slot.
        generation_lengths: Slot -> number of draft tokens packed.
        max_gen_length: Maximum generation length over packed slots.
        event: Completes when every device-side write of the pack is done.
    """

    step: int
    states: dict[int, DecodingState]
    generation_lengths: dict[int, int]
    max_gen_length: int
    event: StreamEvent

    @property
    def active_slots(self) -> list[int]:
        return sorted(self.states)


@dataclass
class StepResult:
    """Acceptance decisions for one packed step.

    Attributes:
        accepted_lengths: ``[max_num_sequences]`` accepted draft count per slot.
        accepted_tokens: ``[max_num_sequences, width]`` tokens to commit per
            slot.  Slot ``i`` commits the first ``max(accepted_lengths[i], 1)``
            entries; with zero accepted drafts, entry 0 is the corrected token.
    """

    accepted_lengths: Tensor
    accepted_tokens: Tensor
    best_paths: dict[int, list[int]] = field(default_factory=dict)


class SpeculativeDecodingBuffers:
    """Dense per-step tensors for a batch of speculative sequences.

    Which optional tensors exist depends on the decoding mode:

    - ``position_offsets``, ``position_ids``, ``packed_masks``: speculative modes.
    - ``draft_probs``: modes with draft probabilities.
    - ``rewind_lengths``: modes that roll back the KV cache.
    - ``position_id_scatter``: modes with a decoder prologue.
    - ``temperatures``, ``position_ids_base``, ``random_data_sample``,
      ``random_data_validation``: explicit-draft-token mode.

    Args:
        max_num_sequences: Number of slots.
        max_tokens_per_step: Maximum draft tokens per slot per step.
        buffer_manager: Allocator and stream for every tensor.
        mode: Speculative strategy.  Defaults to external draft tokens.
        tree: Default draft tree for tree modes (sequences may bring their own).
        vocab_size: When given, draft logits must have this last dimension.
    """

    def __init__(
        self,
        max_num_sequences: int,
        max_tokens_per_step: int,
        buffer_manager: BufferManager,
        mode: SpeculativeDecodingMode | None = None,
        *,
        tree: DraftTree | None = None,
        vocab_size: int | None = None,
    ) -> None:
        mode = mode if mode is not None else SpeculativeDecodingMode.draft_tokens_external()
        if max_num_sequences < 1:
            raise ConfigurationError(
                f"max_num_sequences must be >= 1, got {max_num_sequences}"
            )
        if mode.is_none and max_tokens_per_step != 0:
            raise ConfigurationError(
                f"Mode none proposes no draft tokens; max_tokens_per_step must be 0, "
                f"got {max_tokens_per_step}"
            )
        if mode.is_speculative and max_tokens_per_step < 1:
            raise ConfigurationError(
                f"max_tokens_per_step must be >= 1, got {max_tokens_per_step}"
            )
        if tree is not None:
            if not mode.uses_tree_topology:
                raise ConfigurationError(f"Mode {mode.name} does not use a draft tree")
            if tree.num_nodes > max_tokens_per_step:
                raise ConfigurationError(
                    f"Draft tree has {tree.num_nodes} nodes but max_tokens_per_step "
                    f"is {max_tokens_per_step}"
                )

        self.max_num_sequences = max_num_sequences
        self.max_tokens_per_step = max_tokens_per_step
        self.buffer_manager = buffer_manager
        self.mode = mode
        self.tree = tree
        self.vocab_size = vocab_size
        self.arena = SlotArena(max_num_sequences)

        self._step = 0
        self._pending: PackedStep | None = None
        self._last_event: StreamEvent | None = None

        n, t = max_num_sequences, max_tokens_per_step
        words = num_mask_words(t)
        i32, f32 = torch.int32, torch.float32

        # Device tensor name -> pinned host staging twin.
        self._staging: dict[str, TensorHandle] = {}
        self._device: dict[str, TensorHandle] = {}

        self.generation_lengths = self._staged("generation_lengths", (n,), i32)
        self.cum_generation_lengths = self._staged("cum_generation_lengths", (n + 1,), i32)
        self.sequence_lengths = self._staged("sequence_lengths", (n,), i32)
        self.draft_tokens = self._staged("draft_tokens", (n, t), i32)

        self.position_offsets: TensorHandle | None = None
        self.position_ids: TensorHandle | None = None
        self.packed_masks: TensorHandle | None = None
        self._visibility: TensorHandle | None = None
        if mode.is_speculative:
            self.position_offsets = self._staged("position_offsets", (n, t), i32)
            self.position_ids = self._staged("position_ids", (n, t), i32)
            self._visibility = self._staged("visibility", (n, t, t), torch.bool)
            self.packed_masks = buffer_manager.gpu((n, t, words), i32)

        self.draft_probs: TensorHandle | None = None
        if mode.has_draft_probs:
            self.draft_probs = self._staged("draft_probs", (n, t), f32)

        self.rewind_lengths: TensorHandle | None = None
        if mode.needs_kv_cache_rewind:
            self.rewind_lengths = self._staged("rewind_lengths", (n,), i32)

        self.position_id_scatter: TensorHandle | None = None
        if mode.needs_decoder_prologue:
            self.position_id_scatter = self._staged("position_id_scatter", (n * t,), i32)

        self.temperatures: TensorHandle | None = None
        self.position_ids_base: TensorHandle | None = None
        self.random_data_sample: TensorHandle | None = None
        self.random_data_validation: TensorHandle | None = None
        if mode.is_explicit_draft_tokens:
            self.temperatures = self._staged("temperatures", (n,), f32)
            self.position_ids_base = self._staged("position_ids_base", (n,), i32)
            self.random_data_sample = self._staged("random_data_sample", (n,), f32)
            self.random_data_validation = self._staged("random_data_validation", (n, t), f32)

        # Host mirrors read without a device round trip.
        self.generation_lengths_host = buffer_manager.pinned((n,), i32)
        self.max_gen_length_host = buffer_manager.pinned((1,), i32)

        self._zero_all()
        logger.info(
            "Allocated speculative buffers: mode=%s, max_num_sequences=%d, "
            "max_tokens_per_step=%d, reserved=%d bytes",
            mode.name,
            n,
            t,
            buffer_manager.reserved_bytes,
        )

    @staticmethod
    def from_config(
        config: DecodingConfig,
        buffer_manager: BufferManager | None = None,
    ) -> SpeculativeDecodingBuffers:
        """Build buffers (and, if needed, a buffer manager) from a ``DecodingConfig``."""
        if buffer_manager is None:
            buffer_manager = BufferManager(
                CudaStream(config.device),
                trim_pool=config.trim_pool,
                pool_quota_bytes=config.pool_quota_bytes,
            )
        return SpeculativeDecodingBuffers(
            config.max_num_sequences,
            config.max_tokens_per_step,
            buffer_manager,
            config.speculative_mode,
            tree=config.draft_tree,
            vocab_size=config.vocab_size,
        )

    def _staged(self, name: str, shape: tuple[int, ...], dtype: torch.dtype) -> TensorHandle:
        device = self.buffer_manager.gpu(shape, dtype)
        self._device[name] = device
        self._staging[name] = self.buffer_manager.pinned(shape, dtype)
        return device

    def _zero_all(self) -> None:
        for handle in self._staging.values():
            handle.data.zero_()
        for handle in self._device.values():
            self.buffer_manager.set_zero(handle)
        if self.packed_masks is not None:
            self.buffer_manager.set_zero(self.packed_masks)
        self.generation_lengths_host.data.zero_()
        self.max_gen_length_host.data.zero_()
        self._last_event = self.buffer_manager.stream.record()

    # ------------------------------------------------------------------
    # Slot management
    # ------------------------------------------------------------------

    @property
    def max_gen_length(self) -> int:
        """Host-mirrored maximum generation length of the last packed step."""
        return int(self.max_gen_length_host.data[0])

    def add_sequence(self, state: DecodingState) -> int:
        """Place a new sequence in a free slot and return the slot id."""
        slot = self.arena.add(state)
        logger.debug("Added sequence to slot %d (%d free)", slot, self.arena.free_slot_count())
        return slot

    def evict(self, slot: int) -> DecodingState:
        """Remove the sequence in ``slot``.

        Safe between ``pack`` and ``unpack``: the slot becomes inert (zero
        generation length) and ``unpack`` skips it.
        """
        state = self.arena.evict(slot)
        self.generation_lengths_host.data[slot] = 0
        with self.buffer_manager.stream.use():
            self.generation_lengths.data[slot] = 0
        logger.debug("Evicted slot %d", slot)
        return state

    def propose(
        self,
        slot: int,
        draft_tokens: list[int] | Tensor,
        *,
        draft_logits: Tensor | None = None,
        draft_probs: Tensor | None = None,
        tree: DraftTree | None = None,
    ) -> None:
        """Record draft tokens for the sequence in ``slot``."""
        self.arena[slot].propose(
            draft_tokens, draft_logits=draft_logits, draft_probs=draft_probs, tree=tree
        )

    @property
    def states(self) -> dict[int, DecodingState]:
        """Occupied slot -> decoding state."""
        return dict(self.arena)

    def active_slots(self) -> list[int]:
        """Slots whose sequence is still decoding."""
        return [slot for slot, s in self.arena if s.state is not SlotState.COMPLETE]

    def tree_for(self, state: DecodingState) -> DraftTree:
        """Topology governing ``state``'s current draft tokens.

        Raises:
            ConfigurationError: If the draft does not fit the configured maxima
                or the mode's topology.
        """
        n = state.num_draft_tokens
        if self.mode.is_none and n:
            raise ConfigurationError(f"Mode none received {n} draft tokens")
        if n > self.max_tokens_per_step:
            raise ConfigurationError(
                f"Slot {state.slot} proposed {n} draft tokens; "
                f"max_tokens_per_step is {self.max_tokens_per_step}"
            )
        if self.mode.uses_tree_topology:
            tree = state.draft_tree or self.tree or DraftTree.chain(n)
            if tree.num_nodes != n:
                raise ConfigurationError(
                    f"Slot {state.slot} proposed {n} draft tokens for a tree of "
                    f"{tree.num_nodes} nodes"
                )
            return tree
        if state.draft_tree is not None and not state.draft_tree.is_chain():
            raise ConfigurationError(f"Mode {self.mode.name} only accepts linear drafts")
        return DraftTree.chain(n)

    def _check_draft_tensors(self, state: DecodingState) -> None:
        n = state.num_draft_tokens
        if state.draft_logits is not None:
            logits = state.draft_logits
            if logits.dim() != 2 or logits.shape[0] != n:
                raise ConfigurationError(
                    f"Slot {state.slot}: draft_logits shape {tuple(logits.shape)} does not "
                    f"match {n} draft tokens"
                )
            if self.vocab_size is not None and logits.shape[1] != self.vocab_size:
                raise ConfigurationError(
                    f"Slot {state.slot}: draft_logits vocab {logits.shape[1]} != {self.vocab_size}"
                )
        if state.draft_probs is not None and tuple(state.draft_probs.shape) != (n,):
            raise ConfigurationError(
                f"Slot {state.slot}: draft_probs shape {tuple(state.draft_probs.shape)} "
                f"does not match {n} draft tokens"
            )

    # ------------------------------------------------------------------
    # Pack
    # ------------------------------------------------------------------

    def pack(self) -> PackedStep:
        """Pack every proposed slot into the batch tensors.

        Raises:
            ConfigurationError: If any slot's draft violates the configured maxima.
            RuntimeError: If the previous step has not been unpacked.
        """
        if self._pending is not None:
            raise RuntimeError(f"Step {self._pending.step} was packed but never unpacked")
        # Staging tensors are still being read by the previous step's copies.
        if self._last_event is not None:
            self._last_event.wait()

        proposed = [(slot, s) for slot, s in self.arena if s.state is SlotState.PROPOSED]
        trees: dict[int, DraftTree] = {}
        for slot, state in proposed:
            trees[slot] = self.tree_for(state)
            self._check_draft_tensors(state)

        t = self.max_tokens_per_step
        stage = {name: handle.data for name, handle in self._staging.items()}
        for data in stage.values():
            data.zero_()
        for slot, state in self.arena:
            stage["sequence_lengths"][slot] = state.sequence_length

        gen_lens = stage["generation_lengths"]
        for slot, state in proposed:
            n = state.num_draft_tokens
            tree = trees[slot]
            gen_lens[slot] = n
            if n:
                drafts = torch.tensor(state.draft_tokens, dtype=torch.int32)
                stage["draft_tokens"][slot, :n] = drafts
            if self.mode.is_speculative and n:
                offsets = torch.tensor(tree.depths, dtype=torch.int32) - 1
                stage["position_offsets"][slot, :n] = offsets
                stage["position_ids"][slot, :n] = offsets + state.sequence_length
                stage["visibility"][slot, :n, :n] = tree.visibility()
            if self.draft_probs is not None and n:
                stage["draft_probs"][slot, :n] = self._draft_token_probs(state)
            if self.mode.is_explicit_draft_tokens:
                self._stage_explicit_inputs(stage, slot, state)

        cum = stage["cum_generation_lengths"]
        cum[1:] = torch.cumsum(gen_lens, dim=0)

        if self.position_id_scatter is not None:
            scatter = stage["position_id_scatter"]
            scatter.fill_(-1)
            for slot, state in proposed:
                n = state.num_draft_tokens
                start = int(cum[slot])
                scatter[start : start + n] = torch.arange(n, dtype=torch.int32) + slot * t

        max_gen = max((int(gen_lens[slot]) for slot, _ in proposed), default=0)
        self.generation_lengths_host.data.copy_(gen_lens)
        self.max_gen_length_host.data[0] = max_gen

        for name, host in self._staging.items():
            self.buffer_manager.copy(host, self._device[name])
        if self.packed_masks is not None:
            assert self._visibility is not None
            with self.buffer_manager.stream.use():
                self.packed_masks.data.copy_(pack_mask(self._visibility.data))
        event = self.buffer_manager.stream.record()
        self._last_event = event

        self._step += 1
        packed = PackedStep(
            step=self._step,
            states=dict(proposed),
            generation_lengths={slot: s.num_draft_tokens for slot, s in proposed},
            max_gen_length=max_gen,
            event=event,
        )
        self._pending = packed
        logger.debug(
            "Packed step %d: %d slots, max_gen_length=%d", packed.step, len(proposed), max_gen
        )
        return packed

    def _draft_token_probs(self, state: DecodingState) -> Tensor:
        """Probability the draft model gave each of its proposed tokens."""
        n = state.num_draft_tokens
        if state.draft_probs is not None:
            return state.draft_probs.detach().to("cpu", torch.float32)
        if state.draft_logits is not None:
            probs = torch.softmax(state.draft_logits.detach().to("cpu", torch.float32), dim=-1)
            index = torch.tensor(state.draft_tokens, dtype=torch.long).unsqueeze(1)
            return probs.gather(1, index).squeeze(1)
        return torch.zeros(n, dtype=torch.float32)

    def _stage_explicit_inputs(
        self, stage: dict[str, Tensor], slot: int, state: DecodingState
    ) -> None:
        stage["temperatures"][slot] = state.temperature
        stage["position_ids_base"][slot] = state.sequence_length
        stage["random_data_sample"][slot] = torch.rand((), generator=state.generator)
        n = state.num_draft_tokens
        if n:
            stage["random_data_validation"][slot, :n] = torch.rand(n, generator=state.generator)

    # ------------------------------------------------------------------
    # Unpack
    # ------------------------------------------------------------------

    def unpack(self, step: PackedStep, result: StepResult) -> dict[int, list[int]]:
        """Commit accepted tokens for every slot packed in ``step``.

        All slots are validated before any is committed.  A rejected result
        aborts the whole step (see ``abort``): nothing is committed and the
        buffers are ready for the next ``pack``.

        Returns:
            Slot -> tokens committed this step.

        Raises:
            ValidationInvariantViolation: If a slot's accepted count is negative
                or exceeds its packed generation length.
            ConfigurationError: If the result tensors have the wrong shape.
        """
        if self._pending is not step:
            raise RuntimeError(f"Step {step.step} is not the pending packed step")

        # Host read-back boundary.
        step.event.wait()
        live = self._live_slots(step)
        try:
            lengths, tokens = self._check_result(step, result, live)
        except (ConfigurationError, ValidationInvariantViolation):
            self.abort(step)
            raise

        rewind = self._staging["rewind_lengths"].data if self.rewind_lengths is not None else None
        seq_lens = self._staging["sequence_lengths"].data
        if rewind is not None:
            rewind.zero_()

        committed: dict[int, list[int]] = {}
        for slot in live:
            state = step.states[slot]
            accepted = int(lengths[slot])
            state.validate(accepted)
            committed[slot] = state.commit(tokens[slot, : max(accepted, 1)])
            if rewind is not None:
                rewind[slot] = step.generation_lengths[slot] - accepted

        seq_lens.zero_()
        for slot, state in self.arena:
            seq_lens[slot] = state.sequence_length

        if rewind is not None:
            assert self.rewind_lengths is not None
            self.buffer_manager.copy(self._staging["rewind_lengths"], self.rewind_lengths)
        self.buffer_manager.copy(self._staging["sequence_lengths"], self.sequence_lengths)
        self._last_event = self.buffer_manager.stream.record()
        self._pending = None

        logger.debug(
            "Unpacked step %d: %d slots committed %d tokens",
            step.step,
            len(committed),
            sum(len(v) for v in committed.values()),
        )
        return committed

    def abort(self, step: PackedStep) -> None:
        """Drop a packed step without committing anything.

        Sequences still holding the step's drafts go back to a state that
        can propose again, and every generation length is zeroed.
        """
        if self._pending is not step:
            raise RuntimeError(f"Step {step.step} is not the pending packed step")
        step.event.wait()
        live = self._live_slots(step)
        for slot in live:
            step.states[slot].abort()
        self.generation_lengths_host.data.zero_()
        self.max_gen_length_host.data.zero_()
        self._staging["generation_lengths"].data.zero_()
        self._last_event = self.buffer_manager.set_zero(self.generation_lengths)
        self._pending = None
        logger.warning("Aborted step %d: %d slots dropped their drafts", step.step, len(live))

    def _live_slots(self, step: PackedStep) -> list[int]:
        # Slots evicted (or re-used) since packing are inert.
        return [
            slot
            for slot, state in sorted(step.states.items())
            if self.arena.get(slot) is state and state.state is SlotState.PROPOSED
        ]

    def _check_result(
        self, step: PackedStep, result: StepResult, live: list[int]
    ) -> tuple[list[int], Tensor]:
        n = self.max_num_sequences
        if tuple(result.accepted_lengths.shape) != (n,):
            raise ConfigurationError(
                f"accepted_lengths shape {tuple(result.accepted_lengths.shape)} != ({n},)"
            )
        if result.accepted_tokens.dim() != 2 or result.accepted_tokens.shape[0] != n:
            raise ConfigurationError(
                f"accepted_tokens shape {tuple(result.accepted_tokens.shape)} != ({n}, width)"
            )
        lengths = result.accepted_lengths.to("cpu").tolist()
        tokens = result.accepted_tokens.to("cpu")
        for slot in live:
            accepted = int(lengths[slot])
            proposed = step.generation_lengths[slot]
            if accepted < 0 or accepted > proposed:
                raise ValidationInvariantViolation(
                    f"Slot {slot} accepted {accepted} tokens but {proposed} were proposed "
                    f"(step {step.step})"
                )
            if max(accepted, 1) > tokens.shape[1]:
                raise ConfigurationError(
                    f"accepted_tokens width {tokens.shape[1]} cannot hold {accepted} tokens"
                )
        return lengths, tokens

    def release(self) -> None:
        """Return every tensor to the buffer manager."""
        if self._last_event is not None:
            self._last_event.wait()
        handles = [*self._device.values(), *self._staging.values()]
        handles += [self.generation_lengths_host, self.max_gen_length_host]
        if self.packed_masks is not None:
            handles.append(self.packed_masks)
        for handle in handles:
            if handle.capacity:
                self.buffer_manager.free(handle)
        self._device.clear()
        self._staging.clear()
