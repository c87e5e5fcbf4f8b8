"""Proof embedder — writes the Merkle proof and anchor reference into a certificate."""

from __future__ import annotations

import copy

from certanchor.crypto.canonical import certificate_hash
from certanchor.crypto.merkle import MerkleProof, replay_proof
from certanchor.errors import ProofMismatchError
from certanchor.models.anchor import AnchorTransaction
from certanchor.models.certificate import BlockchainCertificate, UnsignedCertificate


SIGNATURE_TYPE = ["MerkleProof2017", "Extension"]
ANCHOR_TYPE = "BTCOpReturn"


def embed(
    certificate: UnsignedCertificate,
    proof: MerkleProof,
    anchor: AnchorTransaction,
) -> BlockchainCertificate:
    """Attach ``proof`` and ``anchor`` to ``certificate``.

    Pure and deterministic. Checks that the proof starts at this
    certificate's leaf and ends at the anchored root.

    Raises:
        ProofMismatchError: Proof and certificate (or anchor) disagree.
    """
    leaf = certificate_hash(certificate.document)
    if leaf != proof.leaf_hash:
        raise ProofMismatchError(
            f"Proof leaf {proof.leaf_hash} does not match {certificate.certificate_id} ({leaf})"
        )
    if replay_proof(leaf, proof.path) != anchor.anchored_root:
        raise ProofMismatchError(
            f"Proof for {certificate.certificate_id} does not reach anchored root {anchor.anchored_root}"
        )

    document = copy.deepcopy(dict(certificate.document))
    document["signature"] = {
        "type": list(SIGNATURE_TYPE),
        "merkleRoot": anchor.anchored_root,
        "targetHash": leaf,
        "proof": [{step.side.value: step.sibling_hash} for step in proof.path],
        "anchors": [
            {
                "sourceId": anchor.txid,
                "type": ANCHOR_TYPE,
                "chain": anchor.chain,
                "prefixTag": anchor.prefix_tag,
            }
        ],
    }
    return BlockchainCertificate(document=document)
