"""Issuance pipeline — roster + template -> anchored, verifiable certificates.

One call to IssuancePipeline.issue_batch is one batch run:

    roster -> assemble -> commit (Merkle) -> anchor (chain) -> embed

Everything a run touches lives on its BatchRun; there is no ambient
"current batch". Failure policy:
- Roster, assembly and commit failures abort before any network cost.
- An assembly failure aborts only that certificate's assembly, but the
  batch still stops before anchoring: a batch is anchored whole or not at all.
- Anchor failures before broadcast report funds_spent=False. When a
  broadcast may have reached the network they report funds_spent=None
  ("funds possibly spent") with the txid to look up.
- Embed failures after broadcast report funds_spent=True with the txid,
  so the operator knows a re-run would pay a second fee.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from certanchor.chain.anchor import ChainAnchor
from certanchor.chain.esplora import EsploraClient, EsploraFeeEstimator
from certanchor.chain.wallet import LocalKeyWallet
from certanchor.config import IssuerConfig
from certanchor.crypto.commitment_builder import BatchCommitment, commit
from certanchor.errors import (
    BroadcastOutcomeUnknownError,
    CertAnchorError,
    ChainAnchorError,
    EmptyBatchError,
    IssuanceError,
    IssuanceStage,
)
from certanchor.issuance.assembler import CertificateAssembler
from certanchor.issuance.embedder import embed
from certanchor.issuance.roster import RosterStore
from certanchor.models.anchor import AnchorTransaction
from certanchor.models.certificate import (
    BlockchainCertificate,
    RosterEntry,
    Template,
    UnsignedCertificate,
)

logger = logging.getLogger(__name__)


RosterInput = Iterable[Union[Mapping[str, Any], RosterEntry]]


def default_epoch() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class BatchRun:
    """State of one batch, threaded through every stage."""
    template: Template
    epoch: str
    stage: IssuanceStage = IssuanceStage.ROSTER
    roster: list[RosterEntry] = field(default_factory=list)
    certificates: list[UnsignedCertificate] = field(default_factory=list)
    commitment: Optional[BatchCommitment] = None
    anchor: Optional[AnchorTransaction] = None
    issued: list[BlockchainCertificate] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)


class IssuancePipeline:
    """Synchronous batch issuance.

    Usage:
        pipeline = IssuancePipeline.from_config(IssuerConfig.from_env())
        certificates, anchor = pipeline.issue_batch(template, roster_records)
    """

    def __init__(
        self,
        anchor: Optional[ChainAnchor] = None,
        max_workers: Optional[int] = None,
        stamp_run_time: bool = False,
    ) -> None:
        self._anchor = anchor
        self._max_workers = max_workers
        self._stamp_run_time = stamp_run_time
        self._roster_store = RosterStore()

    @classmethod
    def from_config(cls, config: IssuerConfig, **kwargs: Any) -> IssuancePipeline:
        client = EsploraClient(config.esplora_url, timeout=config.http_timeout)
        wallet = LocalKeyWallet(config.require_private_key(), client)
        anchor = ChainAnchor(
            funding=wallet,
            signer=wallet,
            broadcaster=client,
            fee_estimator=EsploraFeeEstimator(
                client, target_blocks=config.fee_target_blocks, ceiling=config.max_fee_rate,
            ),
            chain=config.chain,
            broadcast_retries=config.broadcast_retries,
            retry_backoff=config.retry_backoff,
            chain_source=client,
        )
        return cls(anchor, **kwargs)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def issue_batch(
        self,
        template: Template,
        roster: RosterInput,
        epoch: Optional[str] = None,
    ) -> tuple[list[BlockchainCertificate], AnchorTransaction]:
        """Run a whole batch and return (certificates, anchor transaction).

        Raises:
            IssuanceError: With the failing stage and whether funds were spent.
        """
        run = BatchRun(template=template, epoch=epoch or default_epoch())
        logger.info("Starting batch for epoch %s", run.epoch)

        self._stage(run, IssuanceStage.ROSTER, self._load_roster, roster)
        self._stage(run, IssuanceStage.ASSEMBLY, self._assemble)
        self._stage(run, IssuanceStage.COMMIT, self._commit)
        self._stage(run, IssuanceStage.ANCHOR, self._anchor_root)
        self._stage(run, IssuanceStage.EMBED, self._embed)

        assert run.anchor is not None
        logger.info(
            "Issued %d certificate(s) anchored in %s (%s)",
            len(run.issued), run.anchor.txid,
            ", ".join(f"{k} {v:.2f}s" for k, v in run.timings.items()),
        )
        return run.issued, run.anchor

    def prepare_batch(
        self,
        template: Template,
        roster: RosterInput,
        epoch: Optional[str] = None,
    ) -> BatchRun:
        """Run roster, assembly and commit only; no network access."""
        run = BatchRun(template=template, epoch=epoch or default_epoch())
        self._stage(run, IssuanceStage.ROSTER, self._load_roster, roster)
        self._stage(run, IssuanceStage.ASSEMBLY, self._assemble)
        self._stage(run, IssuanceStage.COMMIT, self._commit)
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _stage(self, run: BatchRun, stage: IssuanceStage, step: Any, *args: Any) -> None:
        run.stage = stage
        started = time.perf_counter()
        try:
            step(run, *args)
        except IssuanceError:
            raise
        except BroadcastOutcomeUnknownError as exc:
            logger.error("Batch failed at %s stage: %s", stage.value, exc)
            raise IssuanceError(stage, str(exc), funds_spent=None, txid=exc.txid) from exc
        except CertAnchorError as exc:
            funds_spent = run.anchor is not None
            logger.error("Batch failed at %s stage: %s", stage.value, exc)
            raise IssuanceError(
                stage,
                str(exc),
                funds_spent=funds_spent,
                txid=run.anchor.txid if run.anchor else None,
            ) from exc
        except Exception as exc:
            if stage is not IssuanceStage.ANCHOR:
                raise
            logger.exception("Batch failed at %s stage", stage.value)
            raise IssuanceError(
                stage, f"Unexpected {type(exc).__name__}: {exc}", funds_spent=None,
            ) from exc
        finally:
            run.timings[stage.value] = time.perf_counter() - started

    def _load_roster(self, run: BatchRun, roster: RosterInput) -> None:
        run.roster = self._roster_store.load(roster)
        if not run.roster:
            raise EmptyBatchError("Roster has no recipients")

    def _assemble(self, run: BatchRun) -> None:
        assembler = CertificateAssembler(
            run.template, run.epoch, stamp_run_time=self._stamp_run_time,
        )
        certificates, failures = assembler.assemble_batch(run.roster, self._max_workers)
        if failures:
            raise IssuanceError(
                IssuanceStage.ASSEMBLY,
                f"{len(failures)} certificate(s) failed to assemble; batch not anchored",
                failures=[(f.index, f.identity, f.error) for f in failures],
            )
        run.certificates = certificates

    def _commit(self, run: BatchRun) -> None:
        run.commitment = commit(run.certificates, max_workers=self._max_workers)

    def _anchor_root(self, run: BatchRun) -> None:
        assert run.commitment is not None
        if self._anchor is None:
            raise ChainAnchorError("No chain anchor configured for this pipeline")
        run.anchor = self._anchor.anchor(run.commitment.root)

    def _embed(self, run: BatchRun) -> None:
        assert run.commitment is not None and run.anchor is not None
        run.issued = [
            embed(cert, proof, run.anchor)
            for cert, proof in zip(run.certificates, run.commitment.proofs)
        ]


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------

def write_certificates(
    directory: Path,
    certificates: Sequence[Union[BlockchainCertificate, UnsignedCertificate]],
) -> list[Path]:
    """Write one ``<uuid>.json`` per certificate into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for cert in certificates:
        document = cert.document
        name = str(document.get("id", "")).removeprefix("urn:uuid:") or "certificate"
        path = directory / f"{name}.json"
        path.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        paths.append(path)
    return paths


def load_certificate(path: Path) -> BlockchainCertificate:
    return BlockchainCertificate.from_file(path)
