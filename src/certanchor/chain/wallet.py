"""Local issuer wallet — funding selection and secp256k1 signing.

Bitcoin and Ethereum share the secp256k1 curve, so issuer keys are loaded
and generated with eth_account and signed with eth_keys (its key backend).
The wallet owns one P2PKH script derived from the compressed public key;
funding comes from UTXOs paying that script and change returns to it.

Key material stays inside this object: it is never logged, never
returned, and excluded from repr().
"""

from __future__ import annotations

import logging
from typing import AbstractSet, Any, Protocol

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import ValidationError

from certanchor.chain.transaction import (
    SIGHASH_ALL,
    Transaction,
    encode_der_signature,
    hash160,
    p2pkh_script,
    push_data,
)
from certanchor.errors import InsufficientFundsError, SigningError
from certanchor.models.anchor import Outpoint, Utxo

logger = logging.getLogger(__name__)


# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class UtxoSource(Protocol):
    def utxos_for_script(self, script_pubkey: bytes) -> list[Utxo]:
        ...


class LocalKeyWallet:
    """FundingSource and TransactionSigner backed by one local private key.

    Usage:
        client = EsploraClient(DEFAULT_ESPLORA_URLS["bitcoinTestnet"])
        wallet = LocalKeyWallet(os.environ["CERTANCHOR_PRIVATE_KEY"], client)
        anchor = ChainAnchor(wallet, wallet, client, EsploraFeeEstimator(client))
    """

    def __init__(
        self,
        private_key: str,
        utxo_source: UtxoSource,
        allow_unconfirmed: bool = False,
    ) -> None:
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError, ValidationError) as exc:
            # Never echo the offending value.
            raise SigningError("Issuer private key is not a valid secp256k1 key") from exc
        self._key = keys.PrivateKey(bytes(account.key))
        self._public_key = self._key.public_key.to_compressed_bytes()
        self._script = p2pkh_script(hash160(self._public_key))
        self._utxo_source = utxo_source
        self._allow_unconfirmed = allow_unconfirmed

    @classmethod
    def generate(cls, utxo_source: Any = None) -> tuple[LocalKeyWallet, str]:
        """Create a wallet with a fresh key. Returns (wallet, private key hex)."""
        account = Account.create()
        key_hex = bytes(account.key).hex()
        return cls(key_hex, utxo_source), key_hex

    def __repr__(self) -> str:
        return f"LocalKeyWallet(script={self._script.hex()})"

    @property
    def public_key_hex(self) -> str:
        return self._public_key.hex()

    @property
    def pubkey_hash(self) -> bytes:
        return hash160(self._public_key)

    # ------------------------------------------------------------------
    # FundingSource
    # ------------------------------------------------------------------

    @property
    def funding_key(self) -> str:
        return self._script.hex()

    @property
    def change_script(self) -> bytes:
        return self._script

    def available_outpoints(self) -> AbstractSet[Outpoint]:
        return frozenset(u.outpoint for u in self._utxo_source.utxos_for_script(self._script))

    def funding_inputs_for(
        self, amount: int, exclude: AbstractSet[Outpoint] = frozenset(),
    ) -> list[Utxo]:
        """Largest-first selection over this wallet's spendable UTXOs."""
        candidates = [
            u for u in self._utxo_source.utxos_for_script(self._script)
            if u.outpoint not in exclude and (u.confirmed or self._allow_unconfirmed)
        ]
        candidates.sort(key=lambda u: (-u.value, u.outpoint.txid, u.outpoint.vout))

        selected: list[Utxo] = []
        total = 0
        for utxo in candidates:
            selected.append(utxo)
            total += utxo.value
            if total >= amount:
                return selected
        raise InsufficientFundsError(required=amount, available=total)

    # ------------------------------------------------------------------
    # TransactionSigner
    # ------------------------------------------------------------------

    def sign(self, transaction: Transaction) -> Transaction:
        """Sign every input as a P2PKH spend of this wallet's script."""
        script_sigs = []
        for index in range(len(transaction.inputs)):
            digest = transaction.signature_hash(index, self._script, SIGHASH_ALL)
            try:
                signature = self._key.sign_msg_hash(digest)
            except Exception as exc:
                raise SigningError(f"Could not sign input {index}: {exc}") from exc
            s = signature.s
            if s > CURVE_ORDER // 2:
                s = CURVE_ORDER - s  # low-S, required for standard relay
            der = encode_der_signature(signature.r, s) + bytes([SIGHASH_ALL])
            script_sigs.append(push_data(der) + push_data(self._public_key))
        logger.debug("Signed %d input(s)", len(script_sigs))
        return transaction.with_script_sigs(script_sigs)
