"""Slot arena: decoding states indexed by stable slot id."""

from __future__ import annotations

from collections.abc import Iterator

from specbatch.decoding.state import DecodingState, SlotState


class SlotArena:
    """Fixed-capacity arena of ``DecodingState`` objects.

    Slot ids are integers in ``[0, max_num_sequences)`` and stay stable for
    the lifetime of a sequence.  Eviction marks a slot free instead of
    compacting the arena, so slot ids held by an in-flight batched step
    never dangle; they simply refer to an empty slot.

    Attributes:
        max_num_sequences: Number of slots.
    """

    def __init__(self, max_num_sequences: int) -> None:
        if max_num_sequences < 1:
            raise ValueError(f"max_num_sequences must be >= 1, got {max_num_sequences}")
        self.max_num_sequences = max_num_sequences
        self._states: list[DecodingState | None] = [None] * max_num_sequences

    def add(self, state: DecodingState) -> int:
        """Place ``state`` in the lowest free slot and return the slot id.

        Raises:
            RuntimeError: If every slot is occupied.
        """
        if state.slot is not None:
            raise ValueError(f"State already occupies slot {state.slot}")
        for slot, occupant in enumerate(self._states):
            if occupant is None:
                self._states[slot] = state
                state.slot = slot
                return slot
        raise RuntimeError("No free decoding slots available")

    def _check_slot(self, slot: int) -> None:
        if not 0 <= slot < self.max_num_sequences:
            raise ValueError(f"Slot {slot} out of range [0, {self.max_num_sequences})")

    def evict(self, slot: int) -> DecodingState:
        """Free ``slot`` and return the state that occupied it."""
        self._check_slot(slot)
        state = self._states[slot]
        if state is None:
            raise ValueError(f"Cannot evict slot {slot}: slot is free")
        self._states[slot] = None
        state.evict()
        return state

    def get(self, slot: int) -> DecodingState | None:
        self._check_slot(slot)
        return self._states[slot]

    def __getitem__(self, slot: int) -> DecodingState:
        self._check_slot(slot)
        state = self._states[slot]
        if state is None:
            raise KeyError(f"Slot {slot} is free")
        return state

    def __contains__(self, slot: int) -> bool:
        return 0 <= slot < self.max_num_sequences and self._states[slot] is not None

    def __len__(self) -> int:
        return sum(s is not None for s in self._states)

    def __iter__(self) -> Iterator[tuple[int, DecodingState]]:
        for slot, state in enumerate(self._states):
            if state is not None:
                yield slot, state

    def occupied_slots(self) -> list[int]:
        return [slot for slot, _ in self]

    def slots_in(self, *states: SlotState) -> list[int]:
        """Occupied slots whose state is one of ``states``."""
        return [slot for slot, s in self if s.state in states]

    def free_slot_count(self) -> int:
        return self.max_num_sequences - len(self)
