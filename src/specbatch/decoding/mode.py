"""Speculative decoding mode: a closed set of strategies with derived predicates."""

from __future__ import annotations

from enum import IntFlag

from specbatch.errors import ConfigurationError


class ModeBits(IntFlag):
    """Discriminant bits.  Exactly one is set in a valid mode."""

    NONE = 1 << 0
    DRAFT_TOKENS_EXTERNAL = 1 << 1
    MEDUSA = 1 << 2
    LOOKAHEAD_DECODING = 1 << 3
    EXPLICIT_DRAFT_TOKENS = 1 << 4


_ALL_BITS = (
    ModeBits.NONE
    | ModeBits.DRAFT_TOKENS_EXTERNAL
    | ModeBits.MEDUSA
    | ModeBits.LOOKAHEAD_DECODING
    | ModeBits.EXPLICIT_DRAFT_TOKENS
)

_NAMES = {
    "none": ModeBits.NONE,
    "draft_tokens_external": ModeBits.DRAFT_TOKENS_EXTERNAL,
    "medusa": ModeBits.MEDUSA,
    "lookahead_decoding": ModeBits.LOOKAHEAD_DECODING,
    "explicit_draft_tokens": ModeBits.EXPLICIT_DRAFT_TOKENS,
}


class SpeculativeDecodingMode:
    """Which speculative strategy governs buffer layout and validation.

    Stores nothing but the discriminant; every property is derived from it.

    Args:
        state: Raw bitset value (one of the ``ModeBits`` members).

    Raises:
        ConfigurationError: If ``state`` is not exactly one known variant.
    """

    __slots__ = ("_state",)

    def __init__(self, state: int) -> None:
        state = int(state)
        if state & ~int(_ALL_BITS) or state == 0 or state & (state - 1):
            raise ConfigurationError(
                f"Invalid speculative decoding mode state {state:#x}: "
                f"exactly one of {[m.name for m in ModeBits]} must be set"
            )
        self._state = ModeBits(state)

    # Named constructors ------------------------------------------------

    @classmethod
    def none(cls) -> SpeculativeDecodingMode:
        return cls(ModeBits.NONE)

    @classmethod
    def draft_tokens_external(cls) -> SpeculativeDecodingMode:
        return cls(ModeBits.DRAFT_TOKENS_EXTERNAL)

    @classmethod
    def medusa(cls) -> SpeculativeDecodingMode:
        return cls(ModeBits.MEDUSA)

    @classmethod
    def lookahead_decoding(cls) -> SpeculativeDecodingMode:
        return cls(ModeBits.LOOKAHEAD_DECODING)

    @classmethod
    def explicit_draft_tokens(cls) -> SpeculativeDecodingMode:
        return cls(ModeBits.EXPLICIT_DRAFT_TOKENS)

    @classmethod
    def from_string(cls, name: str) -> SpeculativeDecodingMode:
        """Parse a mode name such as ``"medusa"`` (case-insensitive)."""
        key = name.strip().lower()
        if key not in _NAMES:
            raise ConfigurationError(
                f"Unknown speculative decoding mode: {name!r}. Choose from {sorted(_NAMES)}"
            )
        return cls(_NAMES[key])

    # Discriminant ------------------------------------------------------

    @property
    def state(self) -> int:
        return int(self._state)

    @property
    def name(self) -> str:
        assert self._state.name is not None
        return self._state.name.lower()

    def _any(self, bits: ModeBits) -> bool:
        return bool(self._state & bits)

    @property
    def is_none(self) -> bool:
        return self._any(ModeBits.NONE)

    @property
    def is_draft_tokens_external(self) -> bool:
        return self._any(ModeBits.DRAFT_TOKENS_EXTERNAL)

    @property
    def is_medusa(self) -> bool:
        return self._any(ModeBits.MEDUSA)

    @property
    def is_lookahead_decoding(self) -> bool:
        return self._any(ModeBits.LOOKAHEAD_DECODING)

    @property
    def is_explicit_draft_tokens(self) -> bool:
        return self._any(ModeBits.EXPLICIT_DRAFT_TOKENS)

    @property
    def is_speculative(self) -> bool:
        return not self.is_none

    # Derived policy ----------------------------------------------------

    @property
    def needs_kv_cache_rewind(self) -> bool:
        """Rejected speculative tokens leave KV entries that must be rolled back."""
        return self._any(
            ModeBits.MEDUSA | ModeBits.LOOKAHEAD_DECODING | ModeBits.EXPLICIT_DRAFT_TOKENS
        )

    @property
    def needs_decoder_prologue(self) -> bool:
        """A position-id scatter map must be built before the decoder step."""
        return self._any(ModeBits.LOOKAHEAD_DECODING | ModeBits.EXPLICIT_DRAFT_TOKENS)

    @property
    def predicts_draft_tokens(self) -> bool:
        """The engine itself produces the next step's draft tokens."""
        return self._any(
            ModeBits.MEDUSA | ModeBits.LOOKAHEAD_DECODING | ModeBits.EXPLICIT_DRAFT_TOKENS
        )

    @property
    def variable_draft_length(self) -> bool:
        return self._any(ModeBits.DRAFT_TOKENS_EXTERNAL | ModeBits.LOOKAHEAD_DECODING)

    @property
    def has_draft_probs(self) -> bool:
        return self._any(ModeBits.DRAFT_TOKENS_EXTERNAL | ModeBits.EXPLICIT_DRAFT_TOKENS)

    @property
    def updates_position_ids(self) -> bool:
        return self._any(ModeBits.LOOKAHEAD_DECODING | ModeBits.EXPLICIT_DRAFT_TOKENS)

    @property
    def requires_attention_mask(self) -> bool:
        return self._any(ModeBits.MEDUSA | ModeBits.EXPLICIT_DRAFT_TOKENS)

    @property
    def uses_tree_topology(self) -> bool:
        """Draft tokens form a tree; otherwise they form a single chain."""
        return self.predicts_draft_tokens

    # Value semantics -----------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SpeculativeDecodingMode):
            return NotImplemented
        return self._state == other._state

    def __hash__(self) -> int:
        return hash(int(self._state))

    def __repr__(self) -> str:
        return f"SpeculativeDecodingMode.{self.name}()"
