"""Chain layer — Bitcoin anchor transactions, Esplora access, issuer wallet."""

from certanchor.chain.anchor import ChainAnchor, ConfirmationPoller, ConfirmationState
from certanchor.chain.esplora import (
    DEFAULT_ESPLORA_URLS,
    EsploraClient,
    EsploraFeeEstimator,
    FixedFeeEstimator,
)
from certanchor.chain.transaction import ANCHOR_PREFIX, ANCHOR_TAG, ANCHOR_VERSION, Transaction
from certanchor.chain.wallet import LocalKeyWallet

__all__ = [
    "ChainAnchor",
    "ConfirmationPoller",
    "ConfirmationState",
    "DEFAULT_ESPLORA_URLS",
    "EsploraClient",
    "EsploraFeeEstimator",
    "FixedFeeEstimator",
    "ANCHOR_PREFIX",
    "ANCHOR_TAG",
    "ANCHOR_VERSION",
    "Transaction",
    "LocalKeyWallet",
]
