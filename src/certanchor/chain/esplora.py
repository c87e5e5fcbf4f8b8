"""Esplora REST client — broadcast, fee estimates, UTXOs and transaction lookups.

Esplora is the HTTP API served by blockstream.info and mempool.space
(and self-hostable next to a bitcoind). Endpoints used:

    GET  /tx/:txid                 transaction JSON with confirmation status
    GET  /blocks/tip/height        current tip height (plain text)
    GET  /fee-estimates            {"<target blocks>": sat/vB, ...}
    GET  /scripthash/:hash/utxo    unspent outputs paying a script
    POST /tx                       raw transaction hex -> txid
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Optional

import requests

from certanchor.chain.transaction import parse_op_return
from certanchor.errors import (
    BroadcastRejectedError,
    ChainDataUnavailableError,
    TransientBroadcastError,
)
from certanchor.models.anchor import ChainTransaction, Outpoint, Utxo

logger = logging.getLogger(__name__)


DEFAULT_ESPLORA_URLS = {
    "bitcoinMainnet": "https://blockstream.info/api",
    "bitcoinTestnet": "https://blockstream.info/testnet/api",
}

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class EsploraClient:
    """Esplora API client. Safe to share between threads for reads."""

    def __init__(
        self,
        base_url: str,
        session: Optional[Any] = None,
        timeout: float = 20.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout

    # ------------------------------------------------------------------
    # ChainDataSource
    # ------------------------------------------------------------------

    def get_transaction(self, txid: str) -> Optional[ChainTransaction]:
        response = self._get(f"/tx/{txid}")
        if response.status_code in (400, 404):
            return None
        payload = self._json(response)
        status = payload.get("status") or {}

        embedded: Optional[bytes] = None
        for vout in payload.get("vout", []):
            script_hex = vout.get("scriptpubkey", "")
            try:
                embedded = parse_op_return(bytes.fromhex(script_hex))
            except ValueError:
                continue
            if embedded is not None:
                break

        return ChainTransaction(
            txid=payload.get("txid", txid),
            confirmed=bool(status.get("confirmed")),
            embedded_data=embedded,
            block_height=status.get("block_height"),
            block_time=status.get("block_time"),
        )

    def get_confirmation_count(self, txid: str) -> int:
        tx = self.get_transaction(txid)
        if tx is None or not tx.confirmed or tx.block_height is None:
            return 0
        return max(0, self.tip_height() - tx.block_height + 1)

    def tip_height(self) -> int:
        response = self._get("/blocks/tip/height")
        self._raise_for_status(response)
        try:
            return int(response.text.strip())
        except ValueError as exc:
            raise ChainDataUnavailableError(f"Bad tip height from {self.base_url}") from exc

    # ------------------------------------------------------------------
    # Broadcaster
    # ------------------------------------------------------------------

    def broadcast(self, raw_hex: str) -> str:
        url = f"{self.base_url}/tx"
        try:
            response = self._session.post(url, data=raw_hex, timeout=self._timeout)
        except requests.RequestException as exc:
            # The node may or may not have received the bytes.
            raise TransientBroadcastError(f"Broadcast to {url} failed: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS:
            raise TransientBroadcastError(
                f"HTTP {response.status_code} from {url}: {response.text.strip()}"
            )
        if not response.ok:
            raise BroadcastRejectedError(response.text.strip(), response.status_code)
        return response.text.strip()

    # ------------------------------------------------------------------
    # Funding and fees
    # ------------------------------------------------------------------

    def fee_estimates(self) -> dict[int, float]:
        response = self._get("/fee-estimates")
        payload = self._json(response)
        return {int(target): float(rate) for target, rate in payload.items()}

    def utxos_for_script(self, script_pubkey: bytes) -> list[Utxo]:
        scripthash = hashlib.sha256(script_pubkey).digest()[::-1].hex()
        response = self._get(f"/scripthash/{scripthash}/utxo")
        return [
            Utxo(
                outpoint=Outpoint(item["txid"], int(item["vout"])),
                value=int(item["value"]),
                confirmed=bool((item.get("status") or {}).get("confirmed")),
            )
            for item in self._json(response)
        ]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            return self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ChainDataUnavailableError(f"Could not reach {url}: {exc}") from exc

    def _raise_for_status(self, response: Any) -> None:
        if not response.ok:
            raise ChainDataUnavailableError(
                f"HTTP {response.status_code} from {self.base_url}"
            )

    def _json(self, response: Any) -> Any:
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ChainDataUnavailableError(f"Invalid JSON from {self.base_url}") from exc


class EsploraFeeEstimator:
    """Fee rate for a confirmation target, clamped to [floor, ceiling]."""

    def __init__(
        self,
        client: EsploraClient,
        target_blocks: int = 6,
        floor: float = 1.0,
        ceiling: Optional[float] = None,
    ) -> None:
        self._client = client
        self._target = target_blocks
        self._floor = floor
        self._ceiling = ceiling

    def fee_rate(self) -> float:
        estimates = self._client.fee_estimates()
        if not estimates:
            logger.warning("No fee estimates available, using floor %.2f sat/vB", self._floor)
            return self._floor
        eligible = [t for t in estimates if t >= self._target]
        target = min(eligible) if eligible else max(estimates)
        rate = max(estimates[target], self._floor)
        if self._ceiling is not None:
            rate = min(rate, self._ceiling)
        logger.debug("Fee rate %.2f sat/vB for %d-block target", rate, target)
        return rate


class FixedFeeEstimator:
    """Constant fee rate, for regtest and tests."""

    def __init__(self, rate: float) -> None:
        self._rate = rate

    def fee_rate(self) -> float:
        return self._rate
