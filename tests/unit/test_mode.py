"""Unit tests for SpeculativeDecodingMode."""

from __future__ import annotations

import pytest

from specbatch.decoding.mode import ModeBits, SpeculativeDecodingMode
from specbatch.errors import ConfigurationError

_MODES = {
    "none": SpeculativeDecodingMode.none(),
    "draft_tokens_external": SpeculativeDecodingMode.draft_tokens_external(),
    "medusa": SpeculativeDecodingMode.medusa(),
    "lookahead_decoding": SpeculativeDecodingMode.lookahead_decoding(),
    "explicit_draft_tokens": SpeculativeDecodingMode.explicit_draft_tokens(),
}


def _modes_where(predicate: str) -> set[str]:
    return {name for name, mode in _MODES.items() if getattr(mode, predicate)}


class TestConstruction:
    def test_discriminant_values(self) -> None:
        assert SpeculativeDecodingMode.none().state == 1
        assert SpeculativeDecodingMode.draft_tokens_external().state == 2
        assert SpeculativeDecodingMode.medusa().state == 4
        assert SpeculativeDecodingMode.lookahead_decoding().state == 8
        assert SpeculativeDecodingMode.explicit_draft_tokens().state == 16

    @pytest.mark.parametrize("state", [0, 3, 6, 32, 31])
    def test_invalid_state(self, state: int) -> None:
        """Exactly one known bit must be set."""
        with pytest.raises(ConfigurationError, match="exactly one"):
            SpeculativeDecodingMode(state)

    def test_from_bits(self) -> None:
        assert SpeculativeDecodingMode(ModeBits.MEDUSA) == SpeculativeDecodingMode.medusa()

    @pytest.mark.parametrize("name", list(_MODES))
    def test_from_string(self, name: str) -> None:
        mode = SpeculativeDecodingMode.from_string(name)
        assert mode == _MODES[name]
        assert mode.name == name

    def test_from_string_case_insensitive(self) -> None:
        assert SpeculativeDecodingMode.from_string(" Medusa ").is_medusa

    def test_from_string_unknown(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown"):
            SpeculativeDecodingMode.from_string("eagle")


class TestPredicates:
    def test_variant_checks_are_exclusive(self) -> None:
        checks = [
            "is_none",
            "is_draft_tokens_external",
            "is_medusa",
            "is_lookahead_decoding",
            "is_explicit_draft_tokens",
        ]
        for mode in _MODES.values():
            assert sum(getattr(mode, c) for c in checks) == 1

    def test_is_speculative(self) -> None:
        assert _modes_where("is_speculative") == set(_MODES) - {"none"}

    def test_needs_kv_cache_rewind(self) -> None:
        assert _modes_where("needs_kv_cache_rewind") == {
            "medusa",
            "lookahead_decoding",
            "explicit_draft_tokens",
        }

    def test_needs_decoder_prologue(self) -> None:
        assert _modes_where("needs_decoder_prologue") == {
            "lookahead_decoding",
            "explicit_draft_tokens",
        }

    def test_predicts_draft_tokens(self) -> None:
        assert _modes_where("predicts_draft_tokens") == {
            "medusa",
            "lookahead_decoding",
            "explicit_draft_tokens",
        }

    def test_variable_draft_length(self) -> None:
        assert _modes_where("variable_draft_length") == {
            "draft_tokens_external",
            "lookahead_decoding",
        }

    def test_has_draft_probs(self) -> None:
        assert _modes_where("has_draft_probs") == {
            "draft_tokens_external",
            "explicit_draft_tokens",
        }

    def test_updates_position_ids(self) -> None:
        assert _modes_where("updates_position_ids") == {
            "lookahead_decoding",
            "explicit_draft_tokens",
        }

    def test_requires_attention_mask(self) -> None:
        assert _modes_where("requires_attention_mask") == {"medusa", "explicit_draft_tokens"}

    def test_uses_tree_topology(self) -> None:
        assert _modes_where("uses_tree_topology") == _modes_where("predicts_draft_tokens")


class TestValueSemantics:
    def test_equality_and_hash(self) -> None:
        a = SpeculativeDecodingMode.medusa()
        b = SpeculativeDecodingMode.from_string("medusa")
        assert a == b
        assert hash(a) == hash(b)
        assert a != SpeculativeDecodingMode.none()
        assert len({a, b, SpeculativeDecodingMode.none()}) == 2

    def test_not_equal_to_int(self) -> None:
        assert SpeculativeDecodingMode.medusa() != 4

    def test_repr(self) -> None:
        assert repr(SpeculativeDecodingMode.medusa()) == "SpeculativeDecodingMode.medusa()"
