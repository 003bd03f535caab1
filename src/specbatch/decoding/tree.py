"""Draft token trees.

A tree describes how the draft tokens proposed for one step relate to each
other.  Node ``j`` is the ``j``-th draft token; ``parents[j]`` is the index
of the draft token it extends, or ``-1`` when it directly extends the last
committed token.  Nodes are topologically ordered (``parents[j] < j``), so
node 0 is always at depth 1.

A linear draft of ``n`` tokens is the chain ``parents = (-1, 0, 1, ..., n-2)``.
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import cached_property

import torch
from torch import Tensor

from specbatch.errors import ConfigurationError


class DraftTree:
    """Immutable parent-pointer tree over draft token positions.

    Args:
        parents: Parent index per node, ``-1`` for depth-1 nodes.

    Raises:
        ConfigurationError: If a parent index is not smaller than its child's.
    """

    def __init__(self, parents: Sequence[int]) -> None:
        parents = tuple(int(p) for p in parents)
        for j, p in enumerate(parents):
            if p < -1 or p >= j:
                raise ConfigurationError(
                    f"Draft tree node {j} has parent {p}; parents must precede children"
                )
        self.parents = parents

    @staticmethod
    def chain(num_nodes: int) -> DraftTree:
        """Linear draft: each token extends the previous one."""
        return DraftTree([j - 1 for j in range(num_nodes)])

    @staticmethod
    def from_paths(paths: Sequence[Sequence[int]]) -> DraftTree:
        """Build a tree from root-to-leaf paths.

        Each path lists node ids starting with the root ``0`` (the last
        committed token); draft node ``k`` has id ``k + 1``.  Negative
        entries pad short paths.  Every draft id up to the largest one must
        appear on some path.

        Example::

            [[0, 1, 3], [0, 2]]  ->  parents (-1, -1, 0)
        """
        parent_of: dict[int, int] = {}
        for path in paths:
            ids = [int(i) for i in path if int(i) >= 0]
            if not ids:
                continue
            if ids[0] != 0:
                raise ConfigurationError(f"Path {list(path)} does not start at the root 0")
            for prev, node in zip(ids, ids[1:]):
                if node == 0:
                    raise ConfigurationError(f"Path {list(path)} revisits the root")
                parent = prev - 1
                if parent_of.setdefault(node - 1, parent) != parent:
                    raise ConfigurationError(
                        f"Node {node} has conflicting parents {parent_of[node - 1] + 1} and {prev}"
                    )
        num_nodes = max(parent_of, default=-1) + 1
        missing = [j for j in range(num_nodes) if j not in parent_of]
        if missing:
            raise ConfigurationError(f"Paths do not cover draft nodes {[j + 1 for j in missing]}")
        return DraftTree([parent_of[j] for j in range(num_nodes)])

    @property
    def num_nodes(self) -> int:
        return len(self.parents)

    @cached_property
    def depths(self) -> tuple[int, ...]:
        """Depth of each node (1 for nodes extending the committed context)."""
        depths: list[int] = []
        for p in self.parents:
            depths.append(1 if p < 0 else depths[p] + 1)
        return tuple(depths)

    @property
    def max_depth(self) -> int:
        return max(self.depths, default=0)

    @cached_property
    def children(self) -> tuple[tuple[int, ...], ...]:
        kids: list[list[int]] = [[] for _ in self.parents]
        for j, p in enumerate(self.parents):
            if p >= 0:
                kids[p].append(j)
        return tuple(tuple(k) for k in kids)

    @property
    def leaves(self) -> list[int]:
        return [j for j, kids in enumerate(self.children) if not kids]

    def ancestors(self, node: int) -> list[int]:
        """Node ids from the depth-1 ancestor down to ``node`` (inclusive)."""
        path = []
        while node >= 0:
            path.append(node)
            node = self.parents[node]
        path.reverse()
        return path

    def visibility(self) -> Tensor:
        """Boolean ``[n, n]`` matrix: ``[i, j]`` is True iff ``j`` is ``i`` or an ancestor."""
        n = self.num_nodes
        mask = torch.zeros(n, n, dtype=torch.bool)
        for i in range(n):
            mask[i, self.ancestors(i)] = True
        return mask

    def to_paths(self) -> list[list[int]]:
        """Root-to-leaf paths in the ``from_paths`` convention."""
        return [[0] + [j + 1 for j in self.ancestors(leaf)] for leaf in self.leaves]

    def is_chain(self) -> bool:
        return all(p == j - 1 for j, p in enumerate(self.parents))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DraftTree):
            return NotImplemented
        return self.parents == other.parents

    def __hash__(self) -> int:
        return hash(self.parents)

    def __repr__(self) -> str:
        return f"DraftTree(parents={list(self.parents)})"
