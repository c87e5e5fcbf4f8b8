"""Cryptographic primitives — canonical hashing, Merkle trees, batch commitments."""

from certanchor.crypto.canonical import certificate_hash, serialize
from certanchor.crypto.commitment_builder import BatchCommitment, CommitmentBuilder, commit
from certanchor.crypto.merkle import MerkleProof, MerkleTree, ProofSide, ProofStep

__all__ = [
    "certificate_hash",
    "serialize",
    "BatchCommitment",
    "CommitmentBuilder",
    "commit",
    "MerkleProof",
    "MerkleTree",
    "ProofSide",
    "ProofStep",
]
