"""Anchor Merkle tree."""

from eth_utils import keccak

from bridge_localnet.engine.merkle import MerkleTree, hash_pair


def _leaf(i: int) -> bytes:
    return keccak(i.to_bytes(32, "big"))


def test_empty_root_is_zero_subtree():
    tree = MerkleTree(levels=4)
    assert tree.root == tree.zeros[4]
    assert len(tree) == 0


def test_two_leaf_root():
    tree = MerkleTree(levels=1)
    tree.insert(_leaf(0))
    tree.insert(_leaf(1))
    assert tree.root == hash_pair(_leaf(0), _leaf(1))


def test_paths_verify_against_root():
    tree = MerkleTree(levels=5)
    for i in range(7):
        tree.insert(_leaf(i))

    for i in range(7):
        path = tree.get_path(i)
        assert path.leaf == _leaf(i)
        assert path.compute_root() == tree.root


def test_snapshot_reproduces_old_root():
    tree = MerkleTree(levels=5)
    roots = []
    for i in range(5):
        tree.insert(_leaf(i))
        roots.append(tree.root)

    assert tree.get_size_at_root(roots[2]) == 3
    snapshot = tree.snapshot(3)
    assert snapshot.root == roots[2]
    assert snapshot.get_path(1).compute_root() == roots[2]


def test_unknown_root_has_no_size():
    tree = MerkleTree(levels=4)
    tree.insert(_leaf(0))
    assert tree.get_size_at_root(tree.zeros[4]) == 0
    assert tree.get_size_at_root(_leaf(99)) is None
