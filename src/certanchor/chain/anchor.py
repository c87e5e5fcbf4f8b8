"""Blockchain anchoring — embeds a batch Merkle root in a Bitcoin OP_RETURN output.

Blockchain anchoring is the act of embedding a hash of important data
into a blockchain transaction, creating an immutable, timestamped,
publicly verifiable proof that the data existed in that exact form
at that exact moment.

The anchor transaction is a self-send: issuer UTXOs in, one zero-value
OP_RETURN output carrying ANCHOR_TAG ++ root, and change back to the
issuer's own script.

Ordering guarantees:
1. Anchors sharing a funding key run one at a time (double-spend guard).
2. Outpoints spent by an accepted (or possibly accepted) broadcast are
   never offered again by this process while the funding source still
   reports them; once it stops reporting them they are forgotten.
3. A signing failure leaves nothing marked spent.
4. Broadcast is retried on transient failures with the same signed
   bytes; a rejection is surfaced immediately. A node answering that it
   already has the transaction counts as acceptance. When acceptance
   cannot be established the txid is reported with
   BroadcastOutcomeUnknownError.
5. Returning means "accepted for relay". Confirmation is polled
   separately with ConfirmationPoller.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from certanchor.chain.interfaces import (
    Broadcaster,
    ChainDataSource,
    FeeEstimator,
    FundingSource,
    TransactionSigner,
)
from certanchor.chain.transaction import (
    ANCHOR_TAG,
    DUST_LIMIT,
    Transaction,
    TxIn,
    TxOut,
    anchor_payload,
    estimate_size,
    op_return_script,
)
from certanchor.errors import (
    BroadcastOutcomeUnknownError,
    BroadcastRejectedError,
    ChainDataUnavailableError,
    SigningError,
    TransientBroadcastError,
)
from certanchor.models.anchor import AnchorTransaction, Outpoint, Utxo

logger = logging.getLogger(__name__)


# Rejection reasons meaning the node already holds this exact transaction.
ALREADY_KNOWN_MARKERS = (
    "txn-already-in-mempool",
    "txn-already-known",
    "already known",
    "already in block chain",
    "outputs already in utxo set",
)


def is_already_known(reason: str) -> bool:
    reason = reason.lower()
    return any(marker in reason for marker in ALREADY_KNOWN_MARKERS)


@dataclass
class _FundingGuard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    spent: set[Outpoint] = field(default_factory=set)


_GUARDS: dict[str, _FundingGuard] = {}
_GUARDS_LOCK = threading.Lock()


def _guard_for(funding_key: str) -> _FundingGuard:
    with _GUARDS_LOCK:
        guard = _GUARDS.get(funding_key)
        if guard is None:
            guard = _GUARDS[funding_key] = _FundingGuard()
        return guard


def spent_outpoints(funding_key: str) -> frozenset[Outpoint]:
    """Outpoints this process has spent from a funding set."""
    guard = _guard_for(funding_key)
    with guard.lock:
        return frozenset(guard.spent)


class ChainAnchor:
    """Builds, signs and broadcasts one anchor transaction per batch root.

    ``chain_source`` is optional. When given, it is asked whether the
    transaction is already known before a failed broadcast is reported.

    Usage:
        anchor = ChainAnchor(wallet, wallet, client, EsploraFeeEstimator(client),
                             chain_source=client)
        record = anchor.anchor(commitment.root)
        poller = ConfirmationPoller(client, record.txid).start()
    """

    def __init__(
        self,
        funding: FundingSource,
        signer: TransactionSigner,
        broadcaster: Broadcaster,
        fee_estimator: FeeEstimator,
        chain: str = "bitcoinTestnet",
        broadcast_retries: int = 3,
        retry_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        chain_source: Optional[ChainDataSource] = None,
    ) -> None:
        if broadcast_retries < 0:
            raise ValueError("broadcast_retries must be >= 0")
        self._funding = funding
        self._signer = signer
        self._broadcaster = broadcaster
        self._fee_estimator = fee_estimator
        self.chain = chain
        self._retries = broadcast_retries
        self._backoff = retry_backoff
        self._sleep = sleep
        self._chain_source = chain_source

    def anchor(self, root: str) -> AnchorTransaction:
        """Anchor ``root`` (64 hex chars) and return the broadcast record.

        Raises:
            InsufficientFundsError: Funding cannot cover the fee.
            SigningError: The signer failed; nothing was spent.
            BroadcastRejectedError: The network refused the transaction.
            BroadcastOutcomeUnknownError: The transaction may have reached
                the network; its inputs stay out of later selections.
        """
        payload = anchor_payload(root)
        guard = _guard_for(self._funding.funding_key)

        with guard.lock:
            self._forget_settled(guard)
            utxos, fee, change = self._select_funding(len(payload), guard.spent)
            unsigned = self._build(payload, utxos, change)
            signed = self._sign(unsigned)
            raw_hex = signed.to_hex()
            txid = signed.txid
            spent = tuple(u.outpoint for u in utxos)

            try:
                reported = self._broadcast(raw_hex, txid)
            except BroadcastOutcomeUnknownError:
                guard.spent.update(spent)
                raise
            if reported and reported != txid:
                logger.warning("Broadcaster reported txid %s, computed %s", reported, txid)
            guard.spent.update(spent)

        logger.info("Broadcast transaction with txid %s", txid)
        return AnchorTransaction(
            txid=txid,
            raw_transaction=raw_hex,
            anchored_root=root.lower(),
            broadcast_timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            chain=self.chain,
            prefix_tag=ANCHOR_TAG.hex(),
            fee=fee,
            spent_outpoints=spent,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _forget_settled(self, guard: _FundingGuard) -> None:
        """Drop remembered outpoints the funding source no longer reports."""
        if not guard.spent:
            return
        settled = guard.spent - set(self._funding.available_outpoints())
        if settled:
            guard.spent -= settled
            logger.debug("Forgot %d settled outpoint(s)", len(settled))

    def _fee_for(self, rate: float, n_inputs: int, with_change: bool, payload_len: int) -> int:
        size = estimate_size(n_inputs, 1 if with_change else 0, payload_len)
        return math.ceil(rate * size)

    def _select_funding(
        self, payload_len: int, exclude: set[Outpoint],
    ) -> tuple[list[Utxo], int, int]:
        """Return (utxos, fee, change) with change either 0 or above dust."""
        rate = self._fee_estimator.fee_rate()
        n_inputs = 1
        while True:
            fee = self._fee_for(rate, n_inputs, True, payload_len)
            utxos = self._funding.funding_inputs_for(fee, exclude=frozenset(exclude))
            if len(utxos) <= n_inputs:
                break
            n_inputs = len(utxos)

        total = sum(u.value for u in utxos)
        fee = self._fee_for(rate, len(utxos), True, payload_len)
        change = total - fee
        if change < DUST_LIMIT:
            # Fold dust into the fee and drop the change output.
            fee, change = total, 0
        logger.info(
            "Funding %d input(s), %d sat total, fee %d sat at %.2f sat/vB",
            len(utxos), total, fee, rate,
        )
        return utxos, fee, change

    def _build(self, payload: bytes, utxos: list[Utxo], change: int) -> Transaction:
        outputs = [TxOut(0, op_return_script(payload))]
        if change:
            outputs.append(TxOut(change, self._funding.change_script))
        return Transaction(
            inputs=tuple(TxIn(u.outpoint) for u in utxos),
            outputs=tuple(outputs),
        )

    def _sign(self, unsigned: Transaction) -> Transaction:
        try:
            signed = self._signer.sign(unsigned)
        except SigningError:
            raise
        except Exception as exc:
            raise SigningError(f"Signer failed: {exc}") from exc
        if not signed.is_signed or signed.outputs != unsigned.outputs:
            raise SigningError("Signer returned an unsigned or altered transaction")
        return signed

    def _broadcast(self, raw_hex: str, txid: str) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._broadcaster.broadcast(raw_hex)
            except BroadcastRejectedError as exc:
                if is_already_known(exc.reason):
                    logger.info("Node already has transaction %s (%s)", txid, exc.reason)
                    return txid
                if attempt == 1:
                    raise
                # An earlier attempt may have been accepted before it failed.
                if self._known_to_chain(txid):
                    return txid
                raise BroadcastOutcomeUnknownError(
                    txid, raw_hex, f"rejected after an interrupted attempt: {exc.reason}",
                ) from exc
            except TransientBroadcastError as exc:
                if attempt > self._retries:
                    logger.error("Broadcast failed after %d attempt(s): %s", attempt, exc)
                    if self._known_to_chain(txid):
                        return txid
                    raise BroadcastOutcomeUnknownError(
                        txid, raw_hex, f"{attempt} attempt(s) failed, last: {exc}",
                    ) from exc
                delay = self._backoff * attempt
                logger.warning(
                    "Broadcast attempt %d failed (%s); retrying in %.1fs", attempt, exc, delay,
                )
                self._sleep(delay)
            except Exception as exc:
                logger.error("Broadcast of %s failed unexpectedly: %s", txid, exc)
                if self._known_to_chain(txid):
                    return txid
                raise BroadcastOutcomeUnknownError(txid, raw_hex, str(exc)) from exc

    def _known_to_chain(self, txid: str) -> bool:
        if self._chain_source is None:
            return False
        try:
            found = self._chain_source.get_transaction(txid) is not None
        except ChainDataUnavailableError as exc:
            logger.warning("Could not look up %s after broadcast failure: %s", txid, exc)
            return False
        if found:
            logger.info("Transaction %s is known to the chain source; treating as accepted", txid)
        return found


class ConfirmationState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ConfirmationPoller:
    """Background, cancellable poll of a transaction's confirmation count.

    Cancelling stops polling only; the broadcast itself is irrevocable.

    Usage:
        poller = ConfirmationPoller(client, txid, target_confirmations=1).start()
        state = poller.wait(timeout=600)
    """

    def __init__(
        self,
        source: ChainDataSource,
        txid: str,
        target_confirmations: int = 1,
        poll_interval: float = 30.0,
        timeout: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self.txid = txid
        self._target = target_confirmations
        self._interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.state = ConfirmationState.PENDING
        self.confirmations = 0

    def start(self) -> ConfirmationPoller:
        if self._thread is not None:
            raise RuntimeError("Poller already started")
        self._thread = threading.Thread(
            target=self._run, name=f"confirm-{self.txid[:12]}", daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> ConfirmationState:
        self._done.wait(timeout)
        return self.state

    def run(self) -> ConfirmationState:
        """Poll in the calling thread until done."""
        self._run()
        return self.state

    def _run(self) -> None:
        deadline = self._clock() + self._timeout
        try:
            while not self._cancel.is_set():
                try:
                    self.confirmations = self._source.get_confirmation_count(self.txid)
                except ChainDataUnavailableError as exc:
                    logger.warning("Confirmation poll for %s failed: %s", self.txid, exc)
                else:
                    logger.info(
                        "Transaction %s has %d/%d confirmation(s)",
                        self.txid, self.confirmations, self._target,
                    )
                    if self.confirmations >= self._target:
                        self.state = ConfirmationState.CONFIRMED
                        return
                if self._clock() >= deadline:
                    self.state = ConfirmationState.TIMED_OUT
                    return
                self._cancel.wait(self._interval)
            self.state = ConfirmationState.CANCELLED
        finally:
            self._done.set()
