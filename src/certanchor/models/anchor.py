"""Chain-side data models: outpoints, funding UTXOs, anchor and chain transactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


EXPLORER_TX_URLS = {
    "bitcoinMainnet": "https://live.blockcypher.com/btc/tx/{txid}/",
    "bitcoinTestnet": "https://live.blockcypher.com/btc-testnet/tx/{txid}/",
}


@dataclass(frozen=True)
class Outpoint:
    """Reference to one output of a previous transaction."""
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class Utxo:
    """A spendable output offered by the funding collaborator."""
    outpoint: Outpoint
    value: int
    confirmed: bool = True


@dataclass(frozen=True)
class AnchorTransaction:
    """A broadcast anchor. The txid is what every certificate references.

    A successful broadcast means the network accepted the transaction for
    relay, not that it is confirmed.
    """
    txid: str
    raw_transaction: str
    anchored_root: str
    broadcast_timestamp: str
    chain: str
    prefix_tag: str
    fee: int
    spent_outpoints: tuple[Outpoint, ...] = ()

    @property
    def explorer_url(self) -> Optional[str]:
        template = EXPLORER_TX_URLS.get(self.chain)
        return template.format(txid=self.txid) if template else None

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "rawTransaction": self.raw_transaction,
            "anchoredRoot": self.anchored_root,
            "broadcastTimestamp": self.broadcast_timestamp,
            "chain": self.chain,
            "prefixTag": self.prefix_tag,
            "fee": self.fee,
            "spentOutpoints": [str(o) for o in self.spent_outpoints],
            "explorerUrl": self.explorer_url,
        }


@dataclass(frozen=True)
class ChainTransaction:
    """What a chain data source reports about a transaction."""
    txid: str
    confirmed: bool
    embedded_data: Optional[bytes]
    block_height: Optional[int] = None
    block_time: Optional[int] = None
