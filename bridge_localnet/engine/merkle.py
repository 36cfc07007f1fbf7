"""Incremental keccak Merkle tree used by the simulated anchors.

Leaves are inserted left to right. Empty subtrees hash to
precomputed zero values, so the root is defined for any
number of leaves.
"""

from dataclasses import dataclass

from eth_utils import keccak
from hexbytes import HexBytes

#: Anchor tree depth
DEFAULT_LEVELS = 30

#: Value of an empty leaf
ZERO_VALUE = keccak(text="anchor")


def hash_pair(left: bytes, right: bytes) -> bytes:
    return keccak(left + right)


def _compute_zeros(levels: int) -> list[bytes]:
    zeros = [ZERO_VALUE]
    for _ in range(levels):
        zeros.append(hash_pair(zeros[-1], zeros[-1]))
    return zeros


@dataclass(slots=True, frozen=True)
class MerklePath:
    """Inclusion path of one leaf."""

    leaf: HexBytes
    path_elements: list[HexBytes]

    #: 0 when our node is the left child at that level, 1 when right
    path_indices: list[int]

    root: HexBytes

    def compute_root(self) -> HexBytes:
        current = bytes(self.leaf)
        for sibling, index in zip(self.path_elements, self.path_indices):
            if index == 0:
                current = hash_pair(current, bytes(sibling))
            else:
                current = hash_pair(bytes(sibling), current)
        return HexBytes(current)


class MerkleTree:
    """Append-only Merkle tree that remembers the root after every insert."""

    def __init__(self, levels: int = DEFAULT_LEVELS):
        assert levels > 0
        self.levels = levels
        self.zeros = _compute_zeros(levels)
        self._layers: list[list[bytes]] = [[] for _ in range(levels + 1)]
        # Root after n leaves is _roots_by_size[n]
        self._roots_by_size: list[bytes] = [self.zeros[levels]]

    def __len__(self) -> int:
        return len(self._layers[0])

    @property
    def root(self) -> HexBytes:
        return HexBytes(self._roots_by_size[-1])

    def insert(self, leaf: bytes) -> int:
        """Append a leaf.

        :return:
            Index of the inserted leaf
        """
        index = len(self._layers[0])
        assert index < 2**self.levels, "Merkle tree is full"
        assert len(leaf) == 32, f"Leaf must be 32 bytes, got {len(leaf)}"

        self._layers[0].append(bytes(leaf))
        current = bytes(leaf)
        node_index = index
        for level in range(self.levels):
            if node_index % 2 == 0:
                current = hash_pair(current, self.zeros[level])
            else:
                current = hash_pair(self._layers[level][node_index - 1], current)
            node_index //= 2
            layer = self._layers[level + 1]
            if node_index < len(layer):
                layer[node_index] = current
            else:
                layer.append(current)

        self._roots_by_size.append(current)
        return index

    def get_size_at_root(self, root: bytes) -> int | None:
        """How many leaves the tree had when its root was ``root``."""
        try:
            return self._roots_by_size.index(bytes(root))
        except ValueError:
            return None

    def snapshot(self, size: int) -> "MerkleTree":
        """Rebuild the tree as it was after the first ``size`` leaves."""
        assert 0 <= size <= len(self), f"Tree has only {len(self)} leaves, asked for {size}"
        tree = MerkleTree(self.levels)
        for leaf in self._layers[0][:size]:
            tree.insert(leaf)
        return tree

    def get_path(self, index: int) -> MerklePath:
        assert 0 <= index < len(self), f"No leaf at index {index}"
        elements = []
        indices = []
        node_index = index
        for level in range(self.levels):
            sibling = node_index ^ 1
            layer = self._layers[level]
            elements.append(HexBytes(layer[sibling] if sibling < len(layer) else self.zeros[level]))
            indices.append(node_index % 2)
            node_index //= 2
        return MerklePath(
            leaf=HexBytes(self._layers[0][index]),
            path_elements=elements,
            path_indices=indices,
            root=self.root,
        )
