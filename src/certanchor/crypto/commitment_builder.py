"""Commitment builder — hashes an assembled batch into a Merkle commitment.

leaf[i] = SHA-256(canonical(cert[i])). Hashing is spread over a thread
pool; the leaf sequence is always rebuilt in roster order, never in
completion order.

The builder is deterministic: given the same certificates, it produces
the same root and the same proofs.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence

from certanchor.crypto.canonical import certificate_hash
from certanchor.crypto.merkle import MerkleProof, MerkleTree
from certanchor.errors import EmptyBatchError, EncodingError
from certanchor.models.certificate import UnsignedCertificate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchCommitment:
    """Root plus one proof per certificate, in roster order."""
    root: str
    leaves: tuple[str, ...]
    proofs: tuple[MerkleProof, ...]


class CommitmentBuilder:
    """Builds a batch commitment from unsigned certificates.

    Usage:
        builder = CommitmentBuilder()
        for cert in certificates:
            builder.add_certificate(cert)
        commitment = builder.build()
    """

    def __init__(self, max_workers: Optional[int] = None) -> None:
        self._max_workers = max_workers
        self._certificates: list[UnsignedCertificate] = []

    def add_certificate(self, certificate: UnsignedCertificate) -> None:
        self._certificates.append(certificate)

    def build(self) -> BatchCommitment:
        """Hash every certificate, build the tree, and emit all proofs.

        Raises:
            EmptyBatchError: No certificates were added.
            EncodingError: One or more certificates cannot be canonicalised.
                All failures are reported together.
        """
        if not self._certificates:
            raise EmptyBatchError("Cannot commit an empty batch")

        leaves = self._hash_all()
        tree = MerkleTree(leaves)
        root = tree.compute_root()
        proofs = tuple(tree.all_proofs())
        logger.info("Committed %d certificate(s) under Merkle root %s", len(leaves), root)
        return BatchCommitment(root=root, leaves=tuple(leaves), proofs=proofs)

    def _hash_all(self) -> list[str]:
        results: dict[int, str] = {}
        failures: list[str] = []
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {
                pool.submit(certificate_hash, cert.document): position
                for position, cert in enumerate(self._certificates)
            }
            for future, position in futures.items():
                try:
                    results[position] = future.result()
                except EncodingError as exc:
                    cert = self._certificates[position]
                    failures.append(f"{cert.certificate_id}: {exc}")
        if failures:
            raise EncodingError("; ".join(failures))
        return [results[position] for position in sorted(results)]


def commit(
    certificates: Sequence[UnsignedCertificate],
    max_workers: Optional[int] = None,
) -> BatchCommitment:
    """Commit an ordered batch of unsigned certificates."""
    builder = CommitmentBuilder(max_workers=max_workers)
    for cert in certificates:
        builder.add_certificate(cert)
    return builder.build()
