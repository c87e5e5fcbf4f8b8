"""Collaborator contracts for the chain layer.

The anchor never holds key material and never talks to a node directly.
It is handed objects satisfying these Protocols:

- FundingSource: offers UTXOs to cover a fee.
- TransactionSigner: signs a fully built transaction.
- Broadcaster: relays raw transactions.
- FeeEstimator: current fee rate in sat/vbyte.
- ChainDataSource: read-only lookups used for confirmation and verification.

EsploraClient implements Broadcaster and ChainDataSource; LocalKeyWallet
implements FundingSource and TransactionSigner.
"""

from __future__ import annotations

from typing import AbstractSet, Optional, Protocol, runtime_checkable

from certanchor.chain.transaction import Transaction
from certanchor.models.anchor import ChainTransaction, Outpoint, Utxo


@runtime_checkable
class FundingSource(Protocol):

    @property
    def funding_key(self) -> str:
        """Stable identifier of the funding input set (e.g. the script hex).

        Anchors sharing a funding key are serialised against each other.
        """
        ...

    @property
    def change_script(self) -> bytes:
        """scriptPubKey that receives change."""
        ...

    def funding_inputs_for(
        self, amount: int, exclude: AbstractSet[Outpoint] = frozenset(),
    ) -> list[Utxo]:
        """UTXOs whose total value covers ``amount`` satoshis.

        Raises InsufficientFundsError if the available set cannot.
        """
        ...

    def available_outpoints(self) -> AbstractSet[Outpoint]:
        """Every outpoint the source currently reports as unspent."""
        ...


@runtime_checkable
class TransactionSigner(Protocol):

    def sign(self, transaction: Transaction) -> Transaction:
        """Return ``transaction`` with every input signed.

        Raises SigningError on failure.
        """
        ...


@runtime_checkable
class Broadcaster(Protocol):

    def broadcast(self, raw_hex: str) -> str:
        """Relay a raw transaction; return the txid the network reports.

        Raises BroadcastRejectedError for a definitive refusal and
        TransientBroadcastError for failures worth retrying.
        """
        ...


@runtime_checkable
class FeeEstimator(Protocol):

    def fee_rate(self) -> float:
        """Fee rate in sat/vbyte."""
        ...


@runtime_checkable
class ChainDataSource(Protocol):

    def get_transaction(self, txid: str) -> Optional[ChainTransaction]:
        """None if the transaction is unknown.

        Raises ChainDataUnavailableError if the source cannot be reached.
        """
        ...

    def get_confirmation_count(self, txid: str) -> int:
        ...
