"""certanchor — batch issuance of chain-anchored certificates.

A batch of certificates is committed to a single Merkle root, the root is
embedded in one Bitcoin OP_RETURN transaction, and each certificate gets
its own inclusion proof so anyone can verify it against public chain data.
"""

__version__ = "0.1.0"
