"""Shared fixtures: a fixed template, roster records, and an in-memory chain."""

import os
from typing import Optional

import pytest

from certanchor.chain.anchor import ChainAnchor
from certanchor.chain.esplora import FixedFeeEstimator
from certanchor.chain.transaction import Transaction
from certanchor.chain.wallet import LocalKeyWallet
from certanchor.config import IssuerConfig
from certanchor.errors import ChainDataUnavailableError
from certanchor.issuance.pipeline import IssuancePipeline
from certanchor.issuance.template import build_template
from certanchor.models.anchor import ChainTransaction, Outpoint, Utxo
from certanchor.models.certificate import Template


ISSUER_KEY = "11" * 32
EPOCH = "2026-10-19T00:00:00Z"
_BASE58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def make_address(n: int) -> str:
    """A testnet-shaped address, unique per ``n``."""
    suffix = ""
    for _ in range(6):
        n, digit = divmod(n, 58)
        suffix = _BASE58[digit] + suffix
    return "mtr98kany9G1XYNU74pRnfBQmaCg" + suffix


def make_records(count: int) -> list[dict]:
    return [
        {
            "name": f"Recipient {i}",
            "pubkey": f"ecdsa-koblitz-pubkey:{make_address(i)}",
            "identity": f"recipient{i}@example.org",
        }
        for i in range(count)
    ]


def fresh_utxo(value: int = 100_000, confirmed: bool = True) -> Utxo:
    """A UTXO with a random outpoint, never seen by any earlier anchor."""
    return Utxo(Outpoint(os.urandom(32).hex(), 0), value, confirmed)


class StubUtxoSource:
    def __init__(self, utxos: list[Utxo]) -> None:
        self.utxos = list(utxos)

    def utxos_for_script(self, script_pubkey: bytes) -> list[Utxo]:
        return list(self.utxos)


class InMemoryChain:
    """Broadcaster and ChainDataSource backed by a dict."""

    def __init__(self) -> None:
        self.transactions: dict[str, Optional[bytes]] = {}
        self.heights: dict[str, int] = {}
        self.broadcasts: list[str] = []
        self.tip = 100
        self.unreachable = False

    def broadcast(self, raw_hex: str) -> str:
        tx = Transaction.from_hex(raw_hex)
        self.broadcasts.append(raw_hex)
        self.transactions[tx.txid] = tx.op_return_data()
        return tx.txid

    def put(self, txid: str, embedded_data: Optional[bytes], height: Optional[int] = None) -> None:
        self.transactions[txid] = embedded_data
        if height is not None:
            self.heights[txid] = height

    def confirm(self, txid: str, height: Optional[int] = None) -> None:
        self.heights[txid] = self.tip if height is None else height

    def get_transaction(self, txid: str) -> Optional[ChainTransaction]:
        if self.unreachable:
            raise ChainDataUnavailableError("chain source offline")
        if txid not in self.transactions:
            return None
        height = self.heights.get(txid)
        return ChainTransaction(
            txid=txid,
            confirmed=height is not None,
            embedded_data=self.transactions[txid],
            block_height=height,
        )

    def get_confirmation_count(self, txid: str) -> int:
        tx = self.get_transaction(txid)
        if tx is None or tx.block_height is None:
            return 0
        return self.tip - tx.block_height + 1


@pytest.fixture
def template() -> Template:
    return Template.from_dict(build_template(IssuerConfig()))


@pytest.fixture
def roster_records() -> list[dict]:
    return make_records(2)


@pytest.fixture
def chain() -> InMemoryChain:
    return InMemoryChain()


@pytest.fixture
def wallet() -> LocalKeyWallet:
    return LocalKeyWallet(ISSUER_KEY, StubUtxoSource([fresh_utxo()]))


@pytest.fixture
def chain_anchor(wallet: LocalKeyWallet, chain: InMemoryChain) -> ChainAnchor:
    return ChainAnchor(wallet, wallet, chain, FixedFeeEstimator(2.0), sleep=lambda _: None)


@pytest.fixture
def pipeline(chain_anchor: ChainAnchor) -> IssuancePipeline:
    return IssuancePipeline(chain_anchor, max_workers=4)
