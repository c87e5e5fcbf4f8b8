"""Core data models for certanchor."""

from certanchor.models.anchor import (
    AnchorTransaction,
    ChainTransaction,
    Outpoint,
    Utxo,
)
from certanchor.models.certificate import (
    BlockchainCertificate,
    RosterEntry,
    Template,
    UnsignedCertificate,
)
from certanchor.models.verification import (
    ReasonCode,
    VerificationResult,
    VerificationStatus,
)

__all__ = [
    "AnchorTransaction",
    "ChainTransaction",
    "Outpoint",
    "Utxo",
    "BlockchainCertificate",
    "RosterEntry",
    "Template",
    "UnsignedCertificate",
    "ReasonCode",
    "VerificationResult",
    "VerificationStatus",
]
