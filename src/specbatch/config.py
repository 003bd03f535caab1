"""Decoding configuration: scalar limits that size the speculative buffers."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from specbatch.decoding.mode import SpeculativeDecodingMode
from specbatch.decoding.tree import DraftTree
from specbatch.errors import ConfigurationError

_VALID_MODES = {
    "none",
    "draft_tokens_external",
    "medusa",
    "lookahead_decoding",
    "explicit_draft_tokens",
}
_TREE_MODES = {"medusa", "lookahead_decoding", "explicit_draft_tokens"}


@dataclass
class DecodingConfig:
    """Configuration for batched speculative decoding buffers.

    Only scalar limits are read from the model and world configuration:
    the buffers never look inside either.

    Attributes:
        mode: Speculative strategy name (see ``SpeculativeDecodingMode.from_string``).
        max_num_sequences: Number of batch slots.
        max_tokens_per_step: Upper bound on draft tokens per slot per step.
        device: Torch device string for device-resident buffers.
        trim_pool: Trim the buffer pool after every free.
        pool_quota_bytes: Cap on bytes reserved by the buffer pool (``None`` = no cap).
        medusa_paths: Default draft tree for tree modes, as root-to-leaf paths
            (see ``DraftTree.from_paths``).  ``None`` = each sequence brings its own.
        vocab_size: Vocabulary size (sanity check for draft logits).
        tensor_parallel_size: Tensor-parallel world size.
    """

    mode: str = "draft_tokens_external"
    max_num_sequences: int = 8
    max_tokens_per_step: int = 4
    device: str = "cuda"
    trim_pool: bool = False
    pool_quota_bytes: int | None = None
    medusa_paths: list[list[int]] | None = None
    vocab_size: int | None = None
    tensor_parallel_size: int = 1

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate configuration values, raising ``ConfigurationError`` on invalid settings."""
        if self.mode not in _VALID_MODES:
            raise ConfigurationError(
                f"Unsupported mode: {self.mode!r}. Choose from {sorted(_VALID_MODES)}"
            )
        if self.max_num_sequences < 1:
            raise ConfigurationError(
                f"max_num_sequences must be >= 1, got {self.max_num_sequences}"
            )
        if self.mode == "none":
            if self.max_tokens_per_step != 0:
                raise ConfigurationError(
                    f"mode 'none' proposes no draft tokens; max_tokens_per_step must be 0, "
                    f"got {self.max_tokens_per_step}"
                )
        elif self.max_tokens_per_step < 1:
            raise ConfigurationError(
                f"max_tokens_per_step must be >= 1, got {self.max_tokens_per_step}"
            )
        if self.pool_quota_bytes is not None and self.pool_quota_bytes < 0:
            raise ConfigurationError(
                f"pool_quota_bytes must be >= 0 or None, got {self.pool_quota_bytes}"
            )
        if self.vocab_size is not None and self.vocab_size < 1:
            raise ConfigurationError(f"vocab_size must be >= 1, got {self.vocab_size}")
        if self.tensor_parallel_size < 1:
            raise ConfigurationError(
                f"tensor_parallel_size must be >= 1, got {self.tensor_parallel_size}"
            )
        if self.medusa_paths is not None:
            if self.mode not in _TREE_MODES:
                raise ConfigurationError(f"medusa_paths requires a tree mode, got {self.mode!r}")
            tree = DraftTree.from_paths(self.medusa_paths)
            if tree.num_nodes > self.max_tokens_per_step:
                raise ConfigurationError(
                    f"Draft tree has {tree.num_nodes} nodes but max_tokens_per_step "
                    f"is {self.max_tokens_per_step}"
                )

    @property
    def speculative_mode(self) -> SpeculativeDecodingMode:
        return SpeculativeDecodingMode.from_string(self.mode)

    @property
    def draft_tree(self) -> DraftTree | None:
        if self.medusa_paths is None:
            return None
        return DraftTree.from_paths(self.medusa_paths)


def load_config(path: str | Path) -> DecodingConfig:
    """Load a ``DecodingConfig`` from a JSON file.

    Unknown keys are ignored so engine-wide config files can be passed directly.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If a value is invalid.
    """
    with open(path) as f:
        raw: dict[str, Any] = json.load(f)
    known_fields = {f.name for f in fields(DecodingConfig)}
    filtered = {k: v for k, v in raw.items() if k in known_fields and v is not None}
    return DecodingConfig(**filtered)
