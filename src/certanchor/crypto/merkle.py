"""Merkle tree over an ordered batch of certificate leaves.

Uses SHA-256. Leaves keep their insertion (roster) order; proof paths are
positional, so reordering leaves changes the root.

Construction rules:
- Internal node = SHA-256(left_bytes ++ right_bytes) over the raw 32-byte
  digests, left first.
- An unmatched node at the end of a level is promoted unchanged to the
  next level. It is never paired with itself.
- One leaf: root = leaf, proof = empty path.
- Zero leaves: EmptyBatchError.
"""

from __future__ import annotations

import enum
import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from certanchor.errors import EmptyBatchError


_HEX64 = re.compile(r"^[0-9a-f]{64}$")


class ProofSide(str, enum.Enum):
    """Which side of the running hash the sibling sits on."""
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class ProofStep:
    sibling_hash: str
    side: ProofSide


@dataclass(frozen=True)
class MerkleProof:
    """An inclusion proof for a single leaf."""
    leaf_hash: str
    index: int
    path: tuple[ProofStep, ...]
    root: str


class MerkleTree:
    """A positional Merkle tree using SHA-256.

    Usage:
        tree = MerkleTree()
        tree.add_leaf(certificate_hash(doc_a))
        tree.add_leaf(certificate_hash(doc_b))
        root = tree.compute_root()
        proof = tree.inclusion_proof(0)
    """

    def __init__(self, leaves: Iterable[str] = ()) -> None:
        self._leaves: list[str] = []
        self._levels: list[list[bytes]] = []
        self._computed = False
        for leaf in leaves:
            self.add_leaf(leaf)

    def add_leaf(self, leaf_hash: str) -> int:
        """Append a leaf hash (lowercase hex). Returns its index."""
        if self._computed:
            raise RuntimeError("Tree already computed. Create a new tree.")
        if not _HEX64.match(leaf_hash):
            raise ValueError(f"Leaf must be 64 lowercase hex chars: {leaf_hash!r}")
        self._leaves.append(leaf_hash)
        return len(self._leaves) - 1

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def leaves(self) -> tuple[str, ...]:
        return tuple(self._leaves)

    def compute_root(self) -> str:
        """Build every level and return the root as hex."""
        if not self._leaves:
            raise EmptyBatchError("Cannot build a Merkle tree with no leaves")
        if self._computed:
            return self._levels[-1][0].hex()

        level = [bytes.fromhex(leaf) for leaf in self._leaves]
        self._levels = [level]
        while len(level) > 1:
            next_level = [
                hash_pair(level[i], level[i + 1])
                for i in range(0, len(level) - 1, 2)
            ]
            if len(level) % 2:
                next_level.append(level[-1])
            self._levels.append(next_level)
            level = next_level

        self._computed = True
        return level[0].hex()

    def inclusion_proof(self, index: int) -> MerkleProof:
        """Generate the inclusion proof for the leaf at ``index``.

        Must call compute_root first.
        """
        if not self._computed:
            raise RuntimeError("Must call compute_root before generating proofs")
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"Leaf index {index} out of range")

        path: list[ProofStep] = []
        position = index
        for level in self._levels[:-1]:
            if position % 2:
                path.append(ProofStep(level[position - 1].hex(), ProofSide.LEFT))
            elif position + 1 < len(level):
                path.append(ProofStep(level[position + 1].hex(), ProofSide.RIGHT))
            # else: promoted, no sibling at this level
            position //= 2

        return MerkleProof(
            leaf_hash=self._leaves[index],
            index=index,
            path=tuple(path),
            root=self._levels[-1][0].hex(),
        )

    def all_proofs(self) -> list[MerkleProof]:
        self.compute_root()
        return [self.inclusion_proof(i) for i in range(len(self._leaves))]


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Hash two nodes together, left bytes first."""
    return hashlib.sha256(left + right).digest()


def replay_proof(leaf_hash: str, path: Sequence[ProofStep]) -> str:
    """Fold a proof path from the leaf upwards and return the resulting root."""
    current = bytes.fromhex(leaf_hash)
    for step in path:
        sibling = bytes.fromhex(step.sibling_hash)
        if step.side is ProofSide.LEFT:
            current = hash_pair(sibling, current)
        else:
            current = hash_pair(current, sibling)
    return current.hex()


def verify_proof(leaf_hash: str, path: Sequence[ProofStep], root: str) -> bool:
    """True if replaying ``path`` from ``leaf_hash`` lands on ``root``."""
    return replay_proof(leaf_hash, path) == root.lower()
