"""Independent certificate verifier.

Re-derives trust from the certificate and public chain data alone; it
never consults issuer state. Input is untrusted, so every field is
checked before use and no content problem escapes as an exception.

Steps, in order:
    (a) recompute the leaf hash from the canonical certificate bytes
    (b) replay the inclusion proof to a candidate root
    (c) fetch the anchor transaction; unknown or unconfirmed ->
        INDETERMINATE, source unreachable -> INDETERMINATE
    (d) check the OP_RETURN prefix tag, the anchored root, and the
        certificate's own merkleRoot claim against the candidate root
"""

from __future__ import annotations

import hashlib
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping, Optional, Sequence, Union

from certanchor.chain.esplora import EsploraClient
from certanchor.chain.interfaces import ChainDataSource
from certanchor.chain.transaction import ANCHOR_TAG, ROOT_SIZE, split_anchor_payload
from certanchor.config import IssuerConfig
from certanchor.crypto.canonical import serialize
from certanchor.errors import ChainDataUnavailableError, EncodingError
from certanchor.models.certificate import BlockchainCertificate
from certanchor.models.verification import (
    ReasonCode,
    VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")
ACCEPTED_ANCHOR_TYPES = ("BTCOpReturn",)

CertificateInput = Union[BlockchainCertificate, Mapping[str, Any]]


class _Malformed(Exception):
    """Internal: certificate structure unusable."""


class Verifier:
    """Verifies finished certificates against a chain data source.

    Stateless apart from its collaborators; safe to call from many threads
    provided the chain data source is.

    Usage:
        verifier = Verifier(EsploraClient(DEFAULT_ESPLORA_URLS["bitcoinTestnet"]))
        result = verifier.verify(BlockchainCertificate.from_file(path))
    """

    def __init__(
        self,
        chain_source: ChainDataSource,
        min_confirmations: int = 1,
        expected_tag: bytes = ANCHOR_TAG,
    ) -> None:
        if min_confirmations < 1:
            raise ValueError("min_confirmations must be >= 1")
        self._source = chain_source
        self._min_confirmations = min_confirmations
        self._expected_tag = expected_tag

    @classmethod
    def from_config(cls, config: IssuerConfig) -> Verifier:
        client = EsploraClient(config.esplora_url, timeout=config.http_timeout)
        return cls(client, min_confirmations=config.min_confirmations)

    def verify(self, certificate: CertificateInput) -> VerificationResult:
        document = certificate.document if isinstance(certificate, BlockchainCertificate) else certificate
        result = self._verify(document)
        log = logger.info if result.valid else logger.warning
        log(
            "Certificate %s: %s (%s) %s",
            result.certificate_id, result.status.value, result.reason.value, result.message,
        )
        return result

    def verify_many(
        self,
        certificates: Sequence[CertificateInput],
        max_workers: Optional[int] = None,
    ) -> list[VerificationResult]:
        """Verify independently; results come back in input order."""
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(self.verify, certificates))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _verify(self, document: Any) -> VerificationResult:
        cert_id = str(document.get("id")) if isinstance(document, Mapping) else None

        def outcome(status: VerificationStatus, reason: ReasonCode, message: str = "",
                    txid: Optional[str] = None, height: Optional[int] = None) -> VerificationResult:
            return VerificationResult(status, reason, message, cert_id, txid, height)

        def invalid(reason: ReasonCode, message: str, txid: Optional[str] = None) -> VerificationResult:
            return outcome(VerificationStatus.INVALID, reason, message, txid)

        try:
            signature = _signature_block(document)
            target_hash = _hex64(signature.get("targetHash"), "targetHash")
            claimed_root = _hex64(signature.get("merkleRoot"), "merkleRoot")
            path = _proof_path(signature.get("proof"))
            txid = _anchor_txid(signature.get("anchors"))
        except _Malformed as exc:
            return invalid(ReasonCode.MALFORMED_CERTIFICATE, str(exc))

        # (a) leaf hash
        try:
            leaf = hashlib.sha256(serialize(document)).hexdigest()
        except EncodingError as exc:
            return invalid(ReasonCode.MALFORMED_CERTIFICATE, f"Cannot canonicalise: {exc}", txid)
        if leaf != target_hash:
            return invalid(
                ReasonCode.HASH_MISMATCH,
                "Certificate content does not match its targetHash; altered after issuance",
                txid,
            )

        # (b) proof replay
        candidate = bytes.fromhex(leaf)
        for sibling, sibling_on_left in path:
            pair = sibling + candidate if sibling_on_left else candidate + sibling
            candidate = hashlib.sha256(pair).digest()
        candidate_root = candidate.hex()

        # (c) chain lookup
        try:
            tx = self._source.get_transaction(txid)
            if tx is not None and tx.confirmed and self._min_confirmations > 1:
                confirmations = self._source.get_confirmation_count(txid)
            else:
                confirmations = 1 if tx is not None and tx.confirmed else 0
        except ChainDataUnavailableError as exc:
            return outcome(
                VerificationStatus.INDETERMINATE, ReasonCode.CHAIN_UNAVAILABLE,
                f"Chain data unavailable: {exc}", txid,
            )
        if tx is None:
            return outcome(
                VerificationStatus.INDETERMINATE, ReasonCode.UNCONFIRMED,
                f"Transaction {txid} not found", txid,
            )
        if not tx.confirmed or confirmations < self._min_confirmations:
            return outcome(
                VerificationStatus.INDETERMINATE, ReasonCode.UNCONFIRMED,
                f"Transaction {txid} has {confirmations}/{self._min_confirmations} confirmation(s)",
                txid,
            )

        # (d) anchored data
        if not tx.embedded_data:
            return invalid(ReasonCode.NO_ANCHOR_DATA, f"Transaction {txid} carries no OP_RETURN data", txid)
        tag, anchored_root = split_anchor_payload(tx.embedded_data)
        if tag != self._expected_tag or len(anchored_root) != ROOT_SIZE:
            return invalid(
                ReasonCode.PREFIX_MISMATCH,
                f"OP_RETURN data {tx.embedded_data.hex()} does not carry the expected anchor tag",
                txid,
            )
        if anchored_root.hex() != candidate_root:
            return invalid(
                ReasonCode.ANCHOR_ROOT_MISMATCH,
                f"Proof leads to root {candidate_root}, transaction anchors {anchored_root.hex()}",
                txid,
            )
        if claimed_root != candidate_root:
            return invalid(
                ReasonCode.MERKLE_ROOT_MISMATCH,
                f"Certificate claims root {claimed_root}, proof leads to {candidate_root}",
                txid,
            )
        return outcome(
            VerificationStatus.VALID, ReasonCode.OK,
            f"Anchored in {txid}", txid, tx.block_height,
        )


def _signature_block(document: Any) -> Mapping[str, Any]:
    if not isinstance(document, Mapping):
        raise _Malformed("Certificate is not a JSON object")
    signature = document.get("signature")
    if not isinstance(signature, Mapping):
        raise _Malformed("Certificate has no signature block")
    return signature


def _hex64(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _HEX64.match(value):
        raise _Malformed(f"{name} must be a 64-character hex string")
    return value.lower()


def _proof_path(proof: Any) -> list[tuple[bytes, bool]]:
    """Parse [{"left": h} | {"right": h}, ...] into (sibling bytes, sibling_on_left)."""
    if not isinstance(proof, list):
        raise _Malformed("proof must be a list")
    path = []
    for position, step in enumerate(proof):
        if not isinstance(step, Mapping) or len(step) != 1:
            raise _Malformed(f"proof step {position} must have exactly one of left/right")
        (side, sibling), = step.items()
        if side not in ("left", "right"):
            raise _Malformed(f"proof step {position} has unknown side {side!r}")
        path.append((bytes.fromhex(_hex64(sibling, f"proof step {position}")), side == "left"))
    return path


def _anchor_txid(anchors: Any) -> str:
    if not isinstance(anchors, list) or not anchors:
        raise _Malformed("anchors must be a non-empty list")
    anchor = anchors[0]
    if not isinstance(anchor, Mapping):
        raise _Malformed("anchor entry must be an object")
    if anchor.get("type") not in ACCEPTED_ANCHOR_TYPES:
        raise _Malformed(f"Unsupported anchor type {anchor.get('type')!r}")
    return _hex64(anchor.get("sourceId"), "anchor sourceId")
